"""
Error Types Module

Typed failures raised by the ledger, rate controller and vault. Every error
aborts the whole operation; the storage transaction around the call is rolled
back before the error reaches the caller.
"""


class AccrualVaultError(ValueError):
    """Base class for all accrual vault failures"""


class RateIncreaseRejected(AccrualVaultError):
    """A new global rate was above the current one"""

    def __init__(self, current_rate: int, requested_rate: int):
        self.current_rate = current_rate
        self.requested_rate = requested_rate
        super().__init__(
            f"Interest rate can only decrease: current={current_rate}, requested={requested_rate}"
        )


class Unauthorized(AccrualVaultError):
    """Caller does not hold the capability an operation requires"""

    def __init__(self, caller: str, capability: str):
        self.caller = caller
        self.capability = capability
        super().__init__(f"Caller {caller} lacks capability {capability}")


class InsufficientBalance(AccrualVaultError):
    """Burn or transfer source lacks enough materialized principal"""

    def __init__(self, account: str, available: int, requested: int):
        self.account = account
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance for {account}: available={available}, requested={requested}"
        )


class InsufficientAllowance(AccrualVaultError):
    """Delegated transfer exceeds the spender's allowance"""

    def __init__(self, owner: str, spender: str, allowance: int, requested: int):
        self.owner = owner
        self.spender = spender
        self.allowance = allowance
        self.requested = requested
        super().__init__(
            f"Insufficient allowance for {spender} on {owner}: "
            f"allowance={allowance}, requested={requested}"
        )


class ArithmeticOverflow(AccrualVaultError):
    """Arithmetic result outside the representable unsigned range"""


class PayoutFailed(AccrualVaultError):
    """External value transfer during redemption did not confirm"""

    def __init__(self, recipient: str, amount: int, reason: str = "payout not confirmed"):
        self.recipient = recipient
        self.amount = amount
        super().__init__(f"Payout of {amount} to {recipient} failed: {reason}")


class InvalidAmount(AccrualVaultError):
    """Amount is negative, zero where a positive value is required, or not an integer"""


class ClockRegression(AccrualVaultError):
    """Current time is earlier than an account's last synchronization"""
