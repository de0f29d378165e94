"""
Inbox writes are best effort and never undo the operation that caused them.
"""

import pytest
from sqlalchemy.exc import OperationalError

from keyflow.errors import NotFoundError
from keyflow.models import Notification
from keyflow.services import notification_service


class TestNotify:
    def test_notify_and_mark_read(self, db_session, chain):
        item = notification_service.notify(chain.nd.id, "keys.received", "You received 3 keys")
        assert item.read_at is None

        unread = notification_service.list_notifications(chain.nd.id, unread_only=True)
        assert [n.id for n in unread] == [item.id]

        notification_service.mark_read(chain.nd.id, item.id)
        assert notification_service.list_notifications(chain.nd.id, unread_only=True) == []
        assert len(notification_service.list_notifications(chain.nd.id)) == 1

    def test_cannot_read_someone_elses(self, db_session, chain):
        item = notification_service.notify(chain.nd.id, "keys.received", "hi")
        with pytest.raises(NotFoundError):
            notification_service.mark_read(chain.ss.id, item.id)

    def test_missing_recipient_is_a_no_op(self, db_session):
        assert notification_service.notify(None, "keys.received", "nobody") is None
        assert db_session.query(Notification).count() == 0

    def test_failure_is_logged_not_raised(self, db_session, chain, monkeypatch, caplog):
        def _boom():
            raise OperationalError("INSERT", {}, Exception("disk full"))

        monkeypatch.setattr(db_session, "commit", _boom)
        with caplog.at_level("WARNING"):
            result = notification_service.notify(chain.nd.id, "keys.received", "lost")

        assert result is None
        assert "Dropped keys.received notification" in caplog.text
        monkeypatch.undo()
        assert db_session.query(Notification).count() == 0
