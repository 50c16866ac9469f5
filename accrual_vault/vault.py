"""
Vault Module

Wraps the external value-transfer mechanism around the accrual ledger:
deposits mint ledger balance at the current global rate, redemptions burn it
and pay the same amount of external value back out. The burn always happens
before the payout, and a failed payout rolls the burn back. Custody movements
register reversals with the storage layer, so they are undone when an
enclosing atomic block rolls back.
"""

from typing import Dict, Any

from .audit import AuditTrail, AuditEventType
from .errors import InvalidAmount, PayoutFailed
from .events import EventPublisherMixin, DomainEvent
from .accrual import MAX_UINT256, validate_uint
from .ledger import AccrualLedger, Amount, AmountRequest
from .logging_config import get_logger, log_action
from .rates import RateController
from .settlement import ValueTransfer


logger = get_logger("accrual_vault.vault")


class Vault(EventPublisherMixin):
    """
    Deposit and redemption front end for an AccrualLedger

    Args:
        vault_id: Identity the vault uses when calling the ledger; it must hold
            the MINT_AND_BURN capability
        ledger: The accrual ledger issuing receipt balances
        rate_controller: Source of the rate snapshot applied to deposits
        value_transfer: External custody of deposited value
        audit_trail: Hash-chained audit log
    """

    STATE_RECORD_ID = "vault"

    def __init__(
        self,
        vault_id: str,
        ledger: AccrualLedger,
        rate_controller: RateController,
        value_transfer: ValueTransfer,
        audit_trail: AuditTrail
    ):
        self.vault_id = vault_id
        self.ledger = ledger
        self.rate_controller = rate_controller
        self.value_transfer = value_transfer
        self.audit_trail = audit_trail
        self.event_dispatcher = ledger.event_dispatcher
        self.storage = ledger.storage
        self.state_table = "vault_state"

    def get_ledger_address(self) -> str:
        return self.ledger.address

    def reserve(self) -> int:
        """External value currently held by the vault"""
        return self.value_transfer.reserve()

    def get_totals(self) -> Dict[str, int]:
        """Lifetime deposited, redeemed and rewards-funded amounts"""
        data = self.storage.load(self.state_table, self.STATE_RECORD_ID) or {}
        return {
            'deposited': int(data.get('deposited', 0)),
            'redeemed': int(data.get('redeemed', 0)),
            'rewards': int(data.get('rewards', 0))
        }

    def deposit(self, caller: str, value: int) -> None:
        """
        Accept external value and mint the same amount at the current global rate

        Raises:
            InvalidAmount: If value is not a positive integer
        """
        validate_uint(value, "value")
        if value == 0:
            raise InvalidAmount("Deposit value must be positive")

        with self.ledger.atomic():
            rate = self.rate_controller.get_rate()
            self.ledger.mint(caller, value, rate, caller=self.vault_id)
            self._add_total('deposited', value)
            self.audit_trail.log_event(
                event_type=AuditEventType.VAULT_DEPOSIT,
                entity_type="vault",
                entity_id=self.vault_id,
                metadata={"account": caller, "value": value, "rate": rate},
                caller=caller
            )
            self.publish_event(DomainEvent.DEPOSIT, "vault", self.vault_id,
                               {"account": caller, "value": str(value)})
            self.value_transfer.receive(caller, value)
            self.storage.on_rollback(lambda: self.value_transfer.refund(caller, value))

        log_action(logger, "info", "Deposit accepted", caller=caller, account=caller,
                   action="deposit", extra={"value": str(value), "rate": str(rate)})

    def redeem(self, caller: str, amount: AmountRequest) -> int:
        """
        Burn ledger balance and pay out the same amount of external value

        Args:
            caller: Account redeeming
            amount: Base units, or Amount.ALL (MAX_UINT256 accepted) for the
                full current balance

        Returns:
            The amount redeemed

        Raises:
            InsufficientBalance: If amount exceeds the caller's balance
            PayoutFailed: If the external payout did not confirm; nothing is burned
        """
        with self.ledger.atomic():
            if amount is Amount.ALL or amount == MAX_UINT256:
                amount = self.ledger.balance_of(caller)
            self.ledger.burn(caller, amount, caller=self.vault_id)
            self._add_total('redeemed', amount)
            self.audit_trail.log_event(
                event_type=AuditEventType.VAULT_REDEEM,
                entity_type="vault",
                entity_id=self.vault_id,
                metadata={"account": caller, "amount": amount},
                caller=caller
            )
            self.publish_event(DomainEvent.REDEEM, "vault", self.vault_id,
                               {"account": caller, "amount": str(amount)})
            self._payout(caller, amount)
            self.storage.on_rollback(lambda: self.value_transfer.reclaim(caller, amount))

        log_action(logger, "info", "Redemption paid", caller=caller, account=caller,
                   action="redeem", extra={"amount": str(amount)})
        return amount

    def fund_rewards(self, sender: str, value: int) -> None:
        """Add external value that backs accrued interest; nothing is minted"""
        validate_uint(value, "value")
        if value == 0:
            raise InvalidAmount("Rewards value must be positive")

        with self.ledger.atomic():
            self._add_total('rewards', value)
            self.audit_trail.log_event(
                event_type=AuditEventType.REWARDS_FUNDED,
                entity_type="vault",
                entity_id=self.vault_id,
                metadata={"sender": sender, "value": value},
                caller=sender
            )
            self.publish_event(DomainEvent.REWARDS_FUNDED, "vault", self.vault_id,
                               {"sender": sender, "value": str(value)})
            self.value_transfer.receive(sender, value)
            self.storage.on_rollback(lambda: self.value_transfer.refund(sender, value))

        log_action(logger, "info", "Rewards funded", caller=sender,
                   action="fund_rewards", extra={"value": str(value)})

    def _payout(self, recipient: str, amount: int) -> None:
        try:
            confirmed = self.value_transfer.pay(recipient, amount)
        except Exception as e:
            log_action(logger, "error", "Payout raised", account=recipient,
                       action="redeem", extra={"amount": str(amount), "error": str(e)})
            raise PayoutFailed(recipient, amount, str(e)) from e
        if not confirmed:
            log_action(logger, "error", "Payout not confirmed", account=recipient,
                       action="redeem", extra={"amount": str(amount)})
            raise PayoutFailed(recipient, amount)

    def _add_total(self, key: str, value: int) -> None:
        totals = self.get_totals()
        totals[key] += value
        record: Dict[str, Any] = {k: str(v) for k, v in totals.items()}
        record['id'] = self.STATE_RECORD_ID
        self.storage.save(self.state_table, self.STATE_RECORD_ID, record)
