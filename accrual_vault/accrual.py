"""
Accrual Math Module

Pure fixed-point arithmetic for linear interest accrual. All values are
unsigned integers; rates are scaled by PRECISION (1e18) and expressed per
second. Results outside [0, MAX_UINT256] raise ArithmeticOverflow instead of
wrapping or truncating.
"""

from dataclasses import dataclass, replace

from .errors import ArithmeticOverflow, ClockRegression, InvalidAmount


PRECISION = 10**18
MAX_UINT256 = 2**256 - 1


def checked_add(a: int, b: int) -> int:
    result = a + b
    if result > MAX_UINT256:
        raise ArithmeticOverflow(f"Addition overflow: {a} + {b}")
    return result


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise ArithmeticOverflow(f"Subtraction underflow: {a} - {b}")
    return a - b


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > MAX_UINT256:
        raise ArithmeticOverflow(f"Multiplication overflow: {a} * {b}")
    return result


def accrual_factor(rate: int, elapsed: int) -> int:
    """Linear growth factor PRECISION + rate * elapsed (no compounding)"""
    return checked_add(PRECISION, checked_mul(rate, elapsed))


def accrued_balance(principal: int, personal_rate: int, last_sync_time: int, now: int) -> int:
    """
    Balance owned at `now` given the state recorded at the last sync.

    Args:
        principal: Materialized base units
        personal_rate: Account's rate snapshot, scaled by PRECISION
        last_sync_time: Timestamp of the last materialization
        now: Current timestamp

    Returns:
        principal * (PRECISION + personal_rate * dt) // PRECISION

    Raises:
        ClockRegression: If now is earlier than last_sync_time
        ArithmeticOverflow: If any intermediate exceeds MAX_UINT256
    """
    elapsed = now - last_sync_time
    if elapsed < 0:
        raise ClockRegression(
            f"Current time {now} is before last sync time {last_sync_time}"
        )
    if elapsed == 0 or principal == 0:
        return principal
    return checked_mul(principal, accrual_factor(personal_rate, elapsed)) // PRECISION


@dataclass(frozen=True)
class AccountAccrual:
    """
    Accrual state of one account

    `principal` is what has been materialized; the balance at any later time
    is derived from it, the rate snapshot and the elapsed time.
    """
    principal: int = 0
    personal_rate: int = 0
    last_sync_time: int = 0

    def balance_at(self, now: int) -> int:
        return accrued_balance(self.principal, self.personal_rate, self.last_sync_time, now)

    def pending_interest(self, now: int) -> int:
        """Accrued but not yet materialized value"""
        return self.balance_at(now) - self.principal

    def materialized(self, now: int) -> 'AccountAccrual':
        """Copy with pending interest folded into principal and the sync time reset"""
        return replace(self, principal=self.balance_at(now), last_sync_time=now)

    def to_dict(self) -> dict:
        return {
            'principal': str(self.principal),
            'personal_rate': str(self.personal_rate),
            'last_sync_time': self.last_sync_time
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AccountAccrual':
        return cls(
            principal=int(data['principal']),
            personal_rate=int(data['personal_rate']),
            last_sync_time=int(data['last_sync_time'])
        )


def validate_uint(value, label: str) -> None:
    """Raise InvalidAmount unless value is an integer in [0, MAX_UINT256]"""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{label} must be an integer, got {value!r}")
    if value < 0 or value > MAX_UINT256:
        raise InvalidAmount(f"{label} out of range: {value}")
