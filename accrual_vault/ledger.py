"""
Accrual Ledger Engine

Balance-tracking token whose balances grow linearly with time. Each account
stores a materialized principal, a personal rate snapshot and the time of its
last sync; balances are derived on read. Every mutation first materializes
pending interest for all accounts it touches, so stored principal never
silently diverges from the reported balance.

All mutating operations are atomic: storage writes, audit events and domain
events either all take effect or none do.
"""

from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Union

from .accrual import AccountAccrual, MAX_UINT256, checked_add, checked_sub, validate_uint
from .audit import AuditTrail, AuditEventType
from .errors import InsufficientBalance, InsufficientAllowance
from .events import EventDispatcher, EventPublisherMixin, DomainEvent
from .logging_config import get_logger, log_action
from .rbac import AccessControl, Capability
from .storage import StorageInterface


logger = get_logger("accrual_vault.ledger")


class Amount(Enum):
    """Symbolic amount requests"""
    ALL = "all"  # The sender's entire balance at call time


AmountRequest = Union[int, Amount]


@dataclass(frozen=True)
class AccountSnapshot:
    """Point-in-time view of one account"""
    account: str
    principal: int
    personal_rate: int
    last_sync_time: int
    balance: int

    @property
    def pending_interest(self) -> int:
        return self.balance - self.principal


class AccrualLedger(EventPublisherMixin):
    """
    Ledger of accruing balances

    Args:
        storage: Backend holding account, supply and allowance records
        access_control: Capability checker for mint and burn
        audit_trail: Hash-chained audit log
        event_dispatcher: Domain event dispatcher
        clock: Object with a now() method returning integer seconds
        name, symbol, decimals: Token metadata
        address: Identifier under which the vault refers to this ledger
    """

    SUPPLY_RECORD_ID = "total_supply"

    def __init__(
        self,
        storage: StorageInterface,
        access_control: AccessControl,
        audit_trail: AuditTrail,
        event_dispatcher: EventDispatcher,
        clock,
        name: str = "Rebase Token",
        symbol: str = "RBT",
        decimals: int = 18,
        address: str = "rebase-token"
    ):
        self.storage = storage
        self.access_control = access_control
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.clock = clock
        self.name = name
        self.symbol = symbol
        self.decimals = decimals
        self.address = address

        self.accounts_table = "accrual_accounts"
        self.state_table = "ledger_state"
        self.allowances_table = "allowances"

    @contextmanager
    def atomic(self):
        """Run a block as one all-or-nothing ledger operation"""
        with self.event_dispatcher.deferred(), self.storage.atomic():
            yield

    # Views

    def balance_of(self, account: str) -> int:
        """Current balance including unmaterialized interest (no side effects)"""
        return self._load(account).balance_at(self.clock.now())

    def principal_balance_of(self, account: str) -> int:
        """Materialized principal, excluding interest accrued since the last sync"""
        return self._load(account).principal

    def get_user_interest_rate(self, account: str) -> int:
        """The account's personal rate snapshot"""
        return self._load(account).personal_rate

    def get_account(self, account: str) -> AccountSnapshot:
        state = self._load(account)
        return AccountSnapshot(
            account=account,
            principal=state.principal,
            personal_rate=state.personal_rate,
            last_sync_time=state.last_sync_time,
            balance=state.balance_at(self.clock.now())
        )

    def total_supply(self) -> int:
        """Sum of materialized principal across all accounts"""
        data = self.storage.load(self.state_table, self.SUPPLY_RECORD_ID)
        return int(data['value']) if data else 0

    def allowance(self, owner: str, spender: str) -> int:
        data = self.storage.load(self.allowances_table, _allowance_key(owner, spender))
        return int(data['amount']) if data else 0

    # Mutations

    def materialize(self, account: str) -> int:
        """
        Convert the account's accrued interest into principal

        Safe to repeat; a second call at the same instant is a no-op.

        Returns:
            The amount of interest materialized
        """
        _validate_account(account)
        with self.atomic():
            before = self._load(account).principal
            after = self._materialize(account, self.clock.now()).principal
        return after - before

    def mint(self, account: str, amount: int, rate_snapshot: int, caller: str) -> None:
        """
        Mint new principal to an account at the given rate snapshot

        Pending interest is materialized under the account's old rate before
        the snapshot overwrites it.

        Raises:
            Unauthorized: If caller lacks MINT_AND_BURN
            InvalidAmount: If amount or rate_snapshot is not a valid unsigned integer
        """
        self.access_control.require(caller, Capability.MINT_AND_BURN)
        _validate_account(account)
        validate_uint(amount, "amount")
        validate_uint(rate_snapshot, "rate")

        now = self.clock.now()
        with self.atomic():
            state = self._materialize(account, now)
            state = replace(state, personal_rate=rate_snapshot,
                            principal=checked_add(state.principal, amount))
            self._save(account, state)
            self._set_supply(checked_add(self.total_supply(), amount))

            self.audit_trail.log_event(
                event_type=AuditEventType.TOKENS_MINTED,
                entity_type="account",
                entity_id=account,
                metadata={"amount": amount, "rate": rate_snapshot, "principal": state.principal},
                caller=caller
            )
            self.publish_event(DomainEvent.MINT, "account", account,
                               {"to": account, "amount": str(amount), "rate": str(rate_snapshot)})

        log_action(logger, "info", "Tokens minted", caller=caller, account=account,
                   action="mint", extra={"amount": str(amount), "rate": str(rate_snapshot)})

    def burn(self, account: str, amount: int, caller: str) -> None:
        """
        Burn principal from an account

        The amount must be explicit; callers resolve "everything" through
        balance_of before calling.

        Raises:
            Unauthorized: If caller lacks MINT_AND_BURN
            InsufficientBalance: If amount exceeds the materialized principal
        """
        self.access_control.require(caller, Capability.MINT_AND_BURN)
        _validate_account(account)
        validate_uint(amount, "amount")

        now = self.clock.now()
        with self.atomic():
            state = self._materialize(account, now)
            if amount > state.principal:
                raise InsufficientBalance(account, state.principal, amount)

            state = replace(state, principal=state.principal - amount)
            self._save(account, state)
            self._set_supply(checked_sub(self.total_supply(), amount))

            self.audit_trail.log_event(
                event_type=AuditEventType.TOKENS_BURNED,
                entity_type="account",
                entity_id=account,
                metadata={"amount": amount, "principal": state.principal},
                caller=caller
            )
            self.publish_event(DomainEvent.BURN, "account", account,
                               {"from": account, "amount": str(amount)})

        log_action(logger, "info", "Tokens burned", caller=caller, account=account,
                   action="burn", extra={"amount": str(amount)})

    def transfer(self, sender: str, recipient: str, amount: AmountRequest) -> int:
        """
        Move value from sender to recipient

        An empty recipient adopts the sender's personal rate.

        Args:
            sender: Account paying out
            recipient: Account receiving
            amount: Base units, or Amount.ALL (MAX_UINT256 is accepted as the same request)

        Returns:
            The amount actually moved
        """
        _validate_account(sender)
        _validate_account(recipient)
        with self.atomic():
            moved = self._move(sender, recipient, amount, self.clock.now(), caller=sender)
        return moved

    def approve(self, owner: str, spender: str, amount: int) -> None:
        """Set the amount spender may move out of owner's account"""
        _validate_account(owner)
        _validate_account(spender)
        validate_uint(amount, "amount")

        with self.atomic():
            self._set_allowance(owner, spender, amount)
            self.audit_trail.log_event(
                event_type=AuditEventType.ALLOWANCE_SET,
                entity_type="account",
                entity_id=owner,
                metadata={"spender": spender, "amount": amount},
                caller=owner
            )
            self.publish_event(DomainEvent.APPROVAL, "account", owner,
                               {"owner": owner, "spender": spender, "amount": str(amount)})

        log_action(logger, "info", "Allowance set", caller=owner, account=owner,
                   action="approve", extra={"spender": spender, "amount": str(amount)})

    def transfer_from(self, spender: str, owner: str, recipient: str, amount: AmountRequest) -> int:
        """
        Move value out of owner's account on the spender's allowance

        An allowance of MAX_UINT256 is unlimited and never decremented.

        Raises:
            InsufficientAllowance: If the resolved amount exceeds the allowance
            InsufficientBalance: If owner lacks the principal
        """
        _validate_account(spender)
        _validate_account(owner)
        _validate_account(recipient)

        now = self.clock.now()
        with self.atomic():
            self._materialize(owner, now)
            resolved = self._resolve_amount(owner, amount, now)
            current = self.allowance(owner, spender)
            if resolved > current:
                raise InsufficientAllowance(owner, spender, current, resolved)
            if current != MAX_UINT256:
                self._set_allowance(owner, spender, current - resolved)
            moved = self._move(owner, recipient, resolved, now, caller=spender)
        return moved

    # Internals

    def _move(self, sender: str, recipient: str, amount: AmountRequest, now: int, caller: str) -> int:
        sender_state = self._materialize(sender, now)
        recipient_state = self._materialize(recipient, now)
        amount = self._resolve_amount(sender, amount, now)

        if amount > sender_state.principal:
            raise InsufficientBalance(sender, sender_state.principal, amount)

        if sender != recipient:
            if recipient_state.principal == 0 and amount > 0:
                if recipient_state.personal_rate != sender_state.personal_rate:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.RATE_INHERITED,
                        entity_type="account",
                        entity_id=recipient,
                        metadata={"from": sender,
                                  "previous_rate": recipient_state.personal_rate,
                                  "new_rate": sender_state.personal_rate},
                        caller=caller
                    )
                recipient_state = replace(recipient_state, personal_rate=sender_state.personal_rate)

            self._save(sender, replace(sender_state, principal=sender_state.principal - amount))
            self._save(recipient, replace(recipient_state,
                                          principal=checked_add(recipient_state.principal, amount)))

        self.audit_trail.log_event(
            event_type=AuditEventType.TOKENS_TRANSFERRED,
            entity_type="account",
            entity_id=sender,
            metadata={"from": sender, "to": recipient, "amount": amount},
            caller=caller
        )
        self.publish_event(DomainEvent.TRANSFER, "account", sender,
                           {"from": sender, "to": recipient, "amount": str(amount)})
        log_action(logger, "info", "Tokens transferred", caller=caller, account=sender,
                   action="transfer", extra={"to": recipient, "amount": str(amount)})
        return amount

    def _resolve_amount(self, sender: str, amount: AmountRequest, now: int) -> int:
        if amount is Amount.ALL or amount == MAX_UINT256:
            return self._load(sender).balance_at(now)
        validate_uint(amount, "amount")
        return amount

    def _materialize(self, account: str, now: int) -> AccountAccrual:
        """Fold pending interest into principal; caller must hold a transaction"""
        state = self._load(account)
        updated = state.materialized(now)
        delta = updated.principal - state.principal
        self._save(account, updated)

        if delta > 0:
            self._set_supply(checked_add(self.total_supply(), delta))
            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_MATERIALIZED,
                entity_type="account",
                entity_id=account,
                metadata={"amount": delta, "rate": state.personal_rate,
                          "elapsed": now - state.last_sync_time}
            )
            self.publish_event(DomainEvent.INTEREST_MATERIALIZED, "account", account,
                               {"account": account, "amount": str(delta)})
            log_action(logger, "debug", "Interest materialized", account=account,
                       action="materialize", extra={"amount": str(delta)})
        return updated

    def _load(self, account: str) -> AccountAccrual:
        data = self.storage.load(self.accounts_table, account)
        if data is None:
            return AccountAccrual()
        return AccountAccrual.from_dict(data)

    def _save(self, account: str, state: AccountAccrual) -> None:
        record = state.to_dict()
        record['id'] = account
        self.storage.save(self.accounts_table, account, record)

    def _set_supply(self, value: int) -> None:
        self.storage.save(self.state_table, self.SUPPLY_RECORD_ID, {
            'id': self.SUPPLY_RECORD_ID,
            'value': str(value)
        })

    def _set_allowance(self, owner: str, spender: str, amount: int) -> None:
        key = _allowance_key(owner, spender)
        self.storage.save(self.allowances_table, key, {
            'id': key,
            'owner': owner,
            'spender': spender,
            'amount': str(amount)
        })


def _allowance_key(owner: str, spender: str) -> str:
    return f"{owner}:{spender}"


def _validate_account(account: str) -> None:
    if not isinstance(account, str) or not account:
        raise ValueError("Account identifier must be a non-empty string")

