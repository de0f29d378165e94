"""
Account directory: creation under the hierarchy, status changes and
compensating removal.
"""

import pytest

from keyflow.errors import (
    AccessDeniedError,
    ConflictError,
    InsufficientInventoryError,
    InvalidArgumentError,
    NotFoundError,
)
from keyflow.models import Account, Child, Key, KeyRequest, KeyTransferLog, SessionToken
from keyflow.models.accounts import ROLE_ADMIN, ROLE_ND, ROLE_SS, ROLE_DB, ROLE_PARENT
from keyflow.models.ledger import LOG_TYPE_DISTRIBUTE, LOG_TYPE_RECLAIM
from keyflow.services import (
    account_service,
    activation_service,
    auth_service,
    key_service,
    request_service,
    session_service,
    transfer_service,
)


def _stock_retailer(chain, count):
    key_service.generate_keys(chain.admin.id, count, 16)
    transfer_service.transfer_keys(chain.admin.id, chain.nd.id, count)
    transfer_service.transfer_keys(chain.nd.id, chain.ss.id, count)
    transfer_service.transfer_keys(chain.ss.id, chain.db.id, count)
    transfer_service.transfer_keys(chain.db.id, chain.retailer.id, count)


class TestCreateAccount:
    def test_each_role_creates_the_next(self, db_session, chain):
        assert chain.nd.created_by_id == chain.admin.id
        assert chain.parent.created_by_id == chain.retailer.id
        assert chain.parent.role == ROLE_PARENT

    @pytest.mark.parametrize("creator_attr,role", [
        ("admin", ROLE_SS),
        ("nd", ROLE_ND),
        ("db", ROLE_PARENT),
        ("parent", ROLE_PARENT),
        ("nd", ROLE_ADMIN),
    ])
    def test_non_adjacent_creation_denied(self, db_session, chain, creator_attr, role):
        creator = getattr(chain, creator_attr)
        with pytest.raises(AccessDeniedError):
            account_service.create_account(creator.id, role, {"name": "x", "email": "x@keyflow.test"})

    def test_only_admins_without_creator(self, db_session):
        with pytest.raises(AccessDeniedError):
            account_service.create_account(None, ROLE_ND, {"name": "x", "email": "x@keyflow.test"})

    def test_duplicate_email_conflicts(self, db_session, chain):
        with pytest.raises(ConflictError):
            account_service.create_account(
                chain.admin.id, ROLE_ND, {"name": "dup", "email": chain.nd.email.upper()}
            )

    @pytest.mark.parametrize("role,profile", [
        ("king", {"name": "x", "email": "x@keyflow.test"}),
        (ROLE_ND, {"name": "", "email": "x@keyflow.test"}),
        (ROLE_ND, {"name": "x", "email": "not-an-email"}),
        (ROLE_ND, {"name": "x", "email": "x@keyflow.test", "phone": 12345}),
    ])
    def test_invalid_input(self, db_session, chain, role, profile):
        with pytest.raises(InvalidArgumentError):
            account_service.create_account(chain.admin.id, role, profile)

    def test_weak_password_rejected(self, db_session, chain):
        with pytest.raises(InvalidArgumentError):
            account_service.create_account(
                chain.admin.id, ROLE_ND, {"name": "x", "email": "x@keyflow.test"}, password="short"
            )

    def test_generated_password_authenticates(self, db_session, chain):
        account, generated = account_service.create_account(
            chain.admin.id, ROLE_ND, {"name": "Gen", "email": "gen@keyflow.test"}
        )
        assert generated
        assert auth_service.authenticate("gen@keyflow.test", generated).id == account.id
        assert auth_service.authenticate("gen@keyflow.test", "Wrong123!") is None

    def test_list_subordinates(self, db_session, chain, make_account):
        second = make_account(ROLE_ND, chain.admin)
        ids = {a.id for a in account_service.list_subordinates(chain.admin.id)}
        assert ids == {chain.nd.id, second.id}
        assert account_service.list_subordinates(chain.admin.id, ROLE_SS) == []
        with pytest.raises(InvalidArgumentError):
            account_service.list_subordinates(chain.admin.id, "king")


class TestCreateParent:
    def test_creates_parent_with_exactly_one_key(self, db_session, chain, assert_ledger_consistent):
        _stock_retailer(chain, 3)

        parent, generated, key = account_service.create_parent(
            chain.retailer.id, {"name": "Pat", "email": "pat@keyflow.test"}
        )

        assert generated
        assert parent.created_by_id == chain.retailer.id
        assert key.current_owner_id == parent.id
        assert key.is_assigned is False
        assert key_service.list_pool(parent.id)[0].token == key.token
        assert db_session.get(Account, chain.retailer.id).balance == 2
        log = db_session.query(KeyTransferLog).filter_by(type=LOG_TYPE_DISTRIBUTE).one()
        assert log.to_account_id == parent.id
        assert_ledger_consistent()

    def test_without_keys_nothing_is_created(self, db_session, chain):
        with pytest.raises(InsufficientInventoryError):
            account_service.create_parent(chain.retailer.id, {"name": "Pat", "email": "pat@keyflow.test"})
        assert db_session.query(Account).filter_by(email="pat@keyflow.test").first() is None

    def test_only_retailers_create_parents(self, db_session, chain):
        with pytest.raises(AccessDeniedError):
            account_service.create_parent(chain.db.id, {"name": "Pat", "email": "pat@keyflow.test"})


class TestRemoveAccount:
    def test_reclaims_pool_to_generating_admin(self, db_session, chain, assert_ledger_consistent):
        key_service.generate_keys(chain.admin.id, 10, 16)
        transfer_service.transfer_keys(chain.admin.id, chain.nd.id, 6)
        transfer_service.transfer_keys(chain.nd.id, chain.ss.id, 2)
        nd_id, ss_id = chain.nd.id, chain.ss.id

        summary = account_service.remove_account(chain.admin.id, nd_id)

        assert summary["reclaimed_keys"] == 4
        assert summary["reclaimed_by_admin"] == {chain.admin.id: 4}
        assert summary["orphaned_accounts"] == 1
        assert db_session.get(Account, nd_id) is None
        assert db_session.get(Account, ss_id).created_by_id is None

        admin = db_session.get(Account, chain.admin.id)
        assert admin.received_keys == 14
        assert admin.balance == 8
        reclaimed = db_session.query(Key).filter(Key.reclaimed_at.isnot(None)).all()
        assert len(reclaimed) == 4
        assert all(k.current_owner_id == chain.admin.id for k in reclaimed)
        log = db_session.query(KeyTransferLog).filter_by(type=LOG_TYPE_RECLAIM).one()
        assert (log.from_account_id, log.to_account_id, log.count) == (nd_id, chain.admin.id, 4)
        assert_ledger_consistent()

    def test_parent_removal_keeps_consumed_keys_and_children(self, db_session, chain, assert_ledger_consistent):
        _stock_retailer(chain, 2)
        parent, _, _ = account_service.create_parent(
            chain.retailer.id, {"name": "Pat", "email": "pat@keyflow.test"}
        )
        result = activation_service.activate(parent.id, {"name": "Sam", "age": 8})
        child_id, key_token, parent_id = result.child.id, result.key.token, parent.id
        pending = request_service.create_request(parent_id, "one more")

        summary = account_service.remove_account(chain.retailer.id, parent_id)

        assert summary["detached_children"] == 1
        assert summary["denied_requests"] == 1
        db_session.expire_all()
        assert db_session.get(Child, child_id).parent_id is None
        key = db_session.query(Key).filter_by(token=key_token).one()
        assert key.is_assigned is True
        assert key.assigned_to_child_id == child_id
        assert key.current_owner_id == chain.admin.id
        request = db_session.get(KeyRequest, pending.id)
        assert request.status == "denied"
        assert request.from_parent_id is None
        assert_ledger_consistent()

    def test_admins_cannot_be_removed(self, db_session, chain, make_account):
        other_admin = make_account(ROLE_ADMIN)
        with pytest.raises(AccessDeniedError):
            account_service.remove_account(other_admin.id, chain.admin.id)

    def test_only_creator_or_admin_removes(self, db_session, chain, make_account):
        sibling = make_account(ROLE_DB, chain.ss)
        with pytest.raises(AccessDeniedError):
            account_service.remove_account(sibling.id, chain.retailer.id)
        with pytest.raises(AccessDeniedError):
            account_service.remove_account(chain.nd.id, chain.retailer.id)

        retailer_id = chain.retailer.id
        account_service.remove_account(chain.db.id, retailer_id)
        with pytest.raises(NotFoundError):
            account_service.get_account(retailer_id)

    def test_unknown_account(self, db_session, chain):
        with pytest.raises(NotFoundError):
            account_service.remove_account(chain.admin.id, 4242)

    def test_keys_go_back_to_each_minting_admin(self, db_session, chain, make_account, assert_ledger_consistent):
        second_admin = make_account(ROLE_ADMIN)
        second_nd = make_account(ROLE_ND, second_admin)
        doomed_nd = make_account(ROLE_ND, chain.admin)
        orphan_ss = make_account(ROLE_SS, doomed_nd)
        orphan_id = orphan_ss.id
        account_service.remove_account(chain.admin.id, doomed_nd.id)

        key_service.generate_keys(chain.admin.id, 2, 16)
        key_service.generate_keys(second_admin.id, 3, 16)
        transfer_service.transfer_keys(chain.admin.id, chain.nd.id, 2)
        transfer_service.transfer_keys(second_admin.id, second_nd.id, 3)
        transfer_service.transfer_keys(chain.nd.id, orphan_id, 2)
        transfer_service.transfer_keys(second_nd.id, orphan_id, 3)

        summary = account_service.remove_account(chain.admin.id, orphan_id)

        assert summary["reclaimed_by_admin"] == {chain.admin.id: 2, second_admin.id: 3}
        assert db_session.query(KeyTransferLog).filter_by(type=LOG_TYPE_RECLAIM).count() == 2
        assert_ledger_consistent()


class TestSetStatus:
    def test_block_revokes_sessions_and_login(self, db_session, chain, assert_ledger_consistent):
        _, token = session_service.create_session(chain.nd.id)

        account = account_service.set_status(chain.admin.id, chain.nd.id, "blocked")

        assert (account.status, account.is_active) == ("blocked", False)
        assert session_service.validate_session(token) is None
        session = db_session.query(SessionToken).filter_by(account_id=chain.nd.id).one()
        assert session.is_revoked is True
        assert session.revoked_reason == "Account blocked"
        assert auth_service.authenticate(chain.nd.email, "Password123!") is None
        assert_ledger_consistent()

    def test_reactivate_restores_login(self, db_session, chain):
        account_service.set_status(chain.nd.id, chain.ss.id, "inactive")
        assert auth_service.authenticate(chain.ss.email, "Password123!") is None

        account = account_service.set_status(chain.nd.id, chain.ss.id, "active")
        assert account.is_active is True
        assert auth_service.authenticate(chain.ss.email, "Password123!") is not None

    def test_only_creator_or_admin(self, db_session, chain, make_account):
        with pytest.raises(AccessDeniedError):
            account_service.set_status(chain.nd.id, chain.db.id, "blocked")
        with pytest.raises(AccessDeniedError):
            account_service.set_status(make_account(ROLE_ADMIN).id, chain.admin.id, "blocked")
        assert db_session.get(Account, chain.db.id).status == "active"

    @pytest.mark.parametrize("status", ["frozen", None, 1])
    def test_unknown_status(self, db_session, chain, status):
        with pytest.raises(InvalidArgumentError):
            account_service.set_status(chain.admin.id, chain.nd.id, status)

    def test_unknown_account(self, db_session, chain):
        with pytest.raises(NotFoundError):
            account_service.set_status(chain.admin.id, 4242, "blocked")
