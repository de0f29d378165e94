"""
Child activation consumes exactly one of the parent's keys.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from keyflow.errors import (
    AccessDeniedError,
    ConflictError,
    InsufficientInventoryError,
    InvalidArgumentError,
)
from keyflow.models import Account, Child, Key, KeyTransferLog
from keyflow.models.ledger import LOG_TYPE_ACTIVATE
from keyflow.services import account_service, activation_service, key_service, transfer_service
from keyflow.time_utils import utcnow


@pytest.fixture
def parent_with_keys(db_session, chain):
    """Parent created with one key; its retailer keeps one more."""
    key_service.generate_keys(chain.admin.id, 2, 16)
    transfer_service.transfer_keys(chain.admin.id, chain.nd.id, 2)
    transfer_service.transfer_keys(chain.nd.id, chain.ss.id, 2)
    transfer_service.transfer_keys(chain.ss.id, chain.db.id, 2)
    transfer_service.transfer_keys(chain.db.id, chain.retailer.id, 2)
    parent, _, _ = account_service.create_parent(
        chain.retailer.id, {"name": "Pat", "email": "pat@keyflow.test"}, password="Password123!"
    )
    return chain, parent


class TestActivate:
    def test_consumes_oldest_key(self, app, db_session, parent_with_keys, assert_ledger_consistent):
        chain, parent = parent_with_keys
        oldest = key_service.list_pool(parent.id)[0].token

        result = activation_service.activate(parent.id, {"name": "Sam", "age": 9, "device_imei": "356938035643809"})

        assert result.key.token == oldest
        key = db_session.query(Key).filter_by(token=oldest).one()
        assert key.is_assigned is True
        assert key.assigned_to_child_id == result.child.id
        assert key.current_owner_id == parent.id
        assert key.assigned_at is not None
        remaining = (key.valid_until - utcnow()).days
        assert app.config["KEY_VALIDITY_DAYS"] - 1 <= remaining <= app.config["KEY_VALIDITY_DAYS"]

        child = db_session.get(Child, result.child.id)
        assert child.parent_id == parent.id
        assert child.device_imei == "356938035643809"

        account = db_session.get(Account, parent.id)
        assert (account.received_keys, account.transferred_keys, account.used_keys) == (1, 1, 1)
        assert account.balance == 0

        log = db_session.query(KeyTransferLog).filter_by(type=LOG_TYPE_ACTIVATE).one()
        assert log.from_account_id == parent.id
        assert log.to_account_id is None
        assert log.child_id == child.id
        assert_ledger_consistent()

    def test_result_payload(self, db_session, parent_with_keys):
        _, parent = parent_with_keys
        body = activation_service.activate(parent.id, {"name": "Sam", "age": 9}).to_dict()
        assert set(body) >= {"child_id", "key", "valid_until", "child"}

    def test_no_keys_creates_no_child(self, db_session, chain, assert_ledger_consistent):
        with pytest.raises(InsufficientInventoryError):
            activation_service.activate(chain.parent.id, {"name": "Sam", "age": 9})
        assert db_session.query(Child).count() == 0
        assert db_session.query(KeyTransferLog).filter_by(type=LOG_TYPE_ACTIVATE).count() == 0
        assert_ledger_consistent()

    def test_second_activation_needs_second_key(self, db_session, parent_with_keys):
        _, parent = parent_with_keys
        activation_service.activate(parent.id, {"name": "Sam", "age": 9})
        with pytest.raises(InsufficientInventoryError):
            activation_service.activate(parent.id, {"name": "Kim", "age": 7})
        assert db_session.query(Child).count() == 1

    def test_duplicate_imei_conflicts(self, db_session, parent_with_keys):
        chain, parent = parent_with_keys
        activation_service.activate(parent.id, {"name": "Sam", "age": 9, "device_imei": "111"})

        other, _, _ = account_service.create_parent(
            chain.retailer.id, {"name": "Lee", "email": "lee@keyflow.test"}, password="Password123!"
        )
        with pytest.raises(ConflictError):
            activation_service.activate(other.id, {"name": "Kim", "age": 7, "device_imei": "111"})
        assert key_service.list_pool(other.id) != []

    def test_imei_race_maps_to_conflict(self, db_session, parent_with_keys, monkeypatch):
        chain, parent = parent_with_keys
        activation_service.activate(parent.id, {"name": "Sam", "age": 9, "device_imei": "111"})
        other, _, _ = account_service.create_parent(
            chain.retailer.id, {"name": "Lee", "email": "lee@keyflow.test"}, password="Password123!"
        )

        # Pre-check misses the existing row, as when another writer commits in between
        real_check = activation_service._imei_taken
        calls = []

        def _late_check(imei):
            calls.append(imei)
            return False if len(calls) == 1 else real_check(imei)

        monkeypatch.setattr(activation_service, "_imei_taken", _late_check)
        with pytest.raises(ConflictError):
            activation_service.activate(other.id, {"name": "Kim", "age": 7, "device_imei": "111"})
        assert len(key_service.list_pool(other.id)) == 1

    def test_other_integrity_errors_propagate(self, db_session, parent_with_keys, monkeypatch, assert_ledger_consistent):
        _, parent = parent_with_keys

        def _broken_log(**kwargs):
            raise IntegrityError("INSERT INTO key_transfer_logs", {}, Exception("NOT NULL constraint failed"))

        monkeypatch.setattr(activation_service, "append_transfer_log", _broken_log)
        with pytest.raises(IntegrityError):
            activation_service.activate(parent.id, {"name": "Sam", "age": 9, "device_imei": "222"})

        monkeypatch.undo()
        assert db_session.query(Child).count() == 0
        assert len(key_service.list_pool(parent.id)) == 1
        assert_ledger_consistent()

    @pytest.mark.parametrize("child_info", [
        None,
        {},
        {"name": "", "age": 5},
        {"name": "Sam"},
        {"name": "Sam", "age": 0},
        {"name": "Sam", "age": "7"},
        {"name": "Sam", "age": True},
        {"name": "Sam", "age": 500},
        {"name": "Sam", "age": 5, "device_imei": "  "},
    ])
    def test_validation(self, db_session, parent_with_keys, child_info):
        _, parent = parent_with_keys
        with pytest.raises(InvalidArgumentError):
            activation_service.activate(parent.id, child_info)

    def test_only_parents_activate(self, db_session, chain):
        with pytest.raises(AccessDeniedError):
            activation_service.activate(chain.retailer.id, {"name": "Sam", "age": 9})

    def test_key_info_after_activation(self, db_session, parent_with_keys):
        _, parent = parent_with_keys
        result = activation_service.activate(parent.id, {"name": "Sam", "age": 9})
        info = key_service.get_key_info(result.key.token)
        assert info["is_assigned"] is True
        assert info["assigned_to"] == {"id": result.child.id, "name": "Sam"}
