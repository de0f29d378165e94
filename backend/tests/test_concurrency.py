"""
Racing callers against a file-backed SQLite database.

Each worker runs in its own thread with its own app context (and so its
own session and connection), the way concurrent requests do.
"""

import threading

import pytest

from keyflow import create_app
from keyflow.errors import ConflictError, InsufficientInventoryError
from keyflow.extensions import db
from keyflow.models import Account, Child, Key, KeyRequest
from keyflow.models.accounts import ROLE_ADMIN, ROLE_ND, ROLE_SS, ROLE_DB, ROLE_RETAILER, ROLE_PARENT
from keyflow.services import (
    account_service,
    activation_service,
    key_service,
    ledger_service,
    request_service,
    transfer_service,
)


WORKERS = 8


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}",
        'BCRYPT_ROUNDS': 4,
        'TX_RETRY_ATTEMPTS': 10,
        'TX_RETRY_BACKOFF': 0.01,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _build_chain(stock: int) -> dict:
    """Admin .. parent, with `stock` keys pushed down to the retailer."""
    ids = {}
    creator = None
    for role in (ROLE_ADMIN, ROLE_ND, ROLE_SS, ROLE_DB, ROLE_RETAILER, ROLE_PARENT):
        account, _ = account_service.create_account(
            creator, role, {"name": role, "email": f"{role}@race.test"}, password="Password123!"
        )
        ids[role] = creator = account.id
    if stock:
        key_service.generate_keys(ids[ROLE_ADMIN], stock, 16)
        for sender, recipient in ((ROLE_ADMIN, ROLE_ND), (ROLE_ND, ROLE_SS), (ROLE_SS, ROLE_DB), (ROLE_DB, ROLE_RETAILER)):
            transfer_service.transfer_keys(ids[sender], ids[recipient], stock)
    return ids


def _race(app, func, args_list):
    """Start every call at once; return (successes, errors)."""
    barrier = threading.Barrier(len(args_list))
    successes = []
    errors = []
    lock = threading.Lock()

    def worker(args):
        with app.app_context():
            try:
                barrier.wait()
                result = func(*args)
                with lock:
                    successes.append(result)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(args,)) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return successes, errors


def _assert_consistent(app):
    with app.app_context():
        drifted = [r for r in ledger_service.reconcile_all() if not r["consistent"]]
        assert not drifted, drifted


def test_single_key_activates_exactly_one_child(file_app):
    with file_app.app_context():
        ids = _build_chain(stock=1)
        req = request_service.create_request(ids[ROLE_PARENT], "one key")
        request_service.approve_request(ids[ROLE_RETAILER], req.id)
        parent_id = ids[ROLE_PARENT]

    calls = [(parent_id, {"name": f"child {i}", "age": 8}) for i in range(WORKERS)]
    successes, errors = _race(file_app, activation_service.activate, calls)

    assert len(successes) == 1
    assert len(errors) == WORKERS - 1
    assert all(isinstance(e, InsufficientInventoryError) for e in errors), errors
    with file_app.app_context():
        assert db.session.query(Child).count() == 1
        assert db.session.query(Key).filter_by(is_assigned=True).count() == 1
    _assert_consistent(file_app)


def test_request_is_approved_exactly_once(file_app):
    with file_app.app_context():
        ids = _build_chain(stock=WORKERS)
        req = request_service.create_request(ids[ROLE_PARENT], "one key")
        request_id = req.id

    calls = [(ids[ROLE_RETAILER], request_id) for _ in range(WORKERS)]
    successes, errors = _race(file_app, request_service.approve_request, calls)

    assert len(successes) == 1
    assert all(isinstance(e, ConflictError) for e in errors), errors
    with file_app.app_context():
        parent = db.session.get(Account, ids[ROLE_PARENT])
        assert parent.received_keys == 1
        assert db.session.query(Key).filter_by(current_owner_id=parent.id).count() == 1
        assert db.session.get(KeyRequest, request_id).status == "approved"
    _assert_consistent(file_app)


def test_two_retailers_race_an_unrouted_request(file_app):
    with file_app.app_context():
        ids = _build_chain(stock=2)
        second, _ = account_service.create_account(
            ids[ROLE_DB], ROLE_RETAILER, {"name": "second", "email": "second@race.test"}, password="Password123!"
        )
        # Both retailers hold keys, so only the status flip decides the race
        key_service.generate_keys(ids[ROLE_ADMIN], 1, 16)
        for sender, recipient in ((ROLE_ADMIN, ROLE_ND), (ROLE_ND, ROLE_SS), (ROLE_SS, ROLE_DB)):
            transfer_service.transfer_keys(ids[sender], ids[recipient], 1)
        transfer_service.transfer_keys(ids[ROLE_DB], second.id, 1)
        db.session.query(Account).filter_by(id=ids[ROLE_PARENT]).update({"created_by_id": None})
        db.session.commit()
        req = request_service.create_request(ids[ROLE_PARENT], "anyone")
        assert req.to_retailer_id is None
        request_id, second_id = req.id, second.id

    calls = [(ids[ROLE_RETAILER], request_id), (second_id, request_id)]
    successes, errors = _race(file_app, request_service.approve_request, calls)

    assert len(successes) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], ConflictError), errors
    with file_app.app_context():
        assert db.session.get(Account, ids[ROLE_PARENT]).received_keys == 1
        retailers = [db.session.get(Account, ids[ROLE_RETAILER]), db.session.get(Account, second_id)]
        assert sorted(r.transferred_keys for r in retailers) == [0, 1]
        req = db.session.get(KeyRequest, request_id)
        assert req.status == "approved"
        assert req.to_retailer_id == req.resolved_by_id
    _assert_consistent(file_app)


def test_concurrent_bulk_transfers_never_oversell(file_app):
    with file_app.app_context():
        ids = _build_chain(stock=0)
        key_service.generate_keys(ids[ROLE_ADMIN], 10, 16)

    calls = [(ids[ROLE_ADMIN], ids[ROLE_ND], 3) for _ in range(WORKERS)]
    successes, errors = _race(file_app, transfer_service.transfer_keys, calls)

    assert len(successes) == 3
    assert all(isinstance(e, InsufficientInventoryError) for e in errors), errors
    moved = [token for result in successes for token in result.tokens]
    assert len(moved) == len(set(moved)) == 9
    with file_app.app_context():
        assert db.session.query(Key).filter_by(current_owner_id=ids[ROLE_ADMIN]).count() == 1
        assert db.session.get(Account, ids[ROLE_ND]).received_keys == 9
    _assert_consistent(file_app)
