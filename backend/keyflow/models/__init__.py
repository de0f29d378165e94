from .accounts import Account, SessionToken
from .keys import Key, Child, KeyRequest
from .ledger import KeyTransferLog
from .notifications import Notification

__all__ = [
    'Account', 'SessionToken',
    'Key', 'Child', 'KeyRequest',
    'KeyTransferLog',
    'Notification',
]
