"""
conftest.py - Shared pytest fixtures for accrual vault tests

Every fixture builds on a fresh in-memory store and a manual clock so tests
step time explicitly.
"""

import pytest

from accrual_vault.audit import AuditTrail
from accrual_vault.clock import ManualClock
from accrual_vault.events import EventDispatcher
from accrual_vault.ledger import AccrualLedger
from accrual_vault.rates import RateController
from accrual_vault.rbac import AccessControl, Capability
from accrual_vault.settlement import InMemoryValueTransfer
from accrual_vault.storage import InMemoryStorage
from accrual_vault.vault import Vault


OWNER = "owner"
VAULT_ID = "vault"
START_TIME = 1_700_000_000
INITIAL_RATE = 5 * 10**10  # 5e-8 per second


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def clock():
    return ManualClock(start=START_TIME)


@pytest.fixture
def access_control(storage, audit_trail):
    """Owner-administered capabilities with the vault allowed to mint and burn"""
    control = AccessControl(storage, OWNER, audit_trail)
    control.grant(OWNER, VAULT_ID, Capability.MINT_AND_BURN)
    return control


@pytest.fixture
def rate_controller(storage, access_control, audit_trail, dispatcher):
    return RateController(storage, access_control, audit_trail, dispatcher, INITIAL_RATE)


@pytest.fixture
def ledger(storage, access_control, audit_trail, dispatcher, clock):
    return AccrualLedger(storage, access_control, audit_trail, dispatcher, clock)


@pytest.fixture
def value_transfer():
    return InMemoryValueTransfer()


@pytest.fixture
def vault(ledger, rate_controller, value_transfer, audit_trail):
    return Vault(VAULT_ID, ledger, rate_controller, value_transfer, audit_trail)
