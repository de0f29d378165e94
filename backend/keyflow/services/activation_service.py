# Overview: Service-layer operations for child activation; terminal key consumption.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import ConflictError, InsufficientInventoryError, InvalidArgumentError
from ..models import Account, Child, Key
from ..models.accounts import ROLE_PARENT
from ..models.ledger import LOG_TYPE_ACTIVATE
from .concurrency import run_atomic, increment_counters
from .key_service import require_positive_int
from .account_service import require_account
from .ledger_service import append_transfer_log
from .transfer_service import claim_keys
from keyflow.time_utils import utcnow, validity_horizon


MAX_CHILD_AGE = 150


@dataclass
class ActivationResult:
    child: Child
    key: Key

    def to_dict(self) -> dict:
        return {
            "child_id": self.child.id,
            "key": self.key.token,
            "valid_until": self.key.to_dict()["valid_until"],
            "child": self.child.to_dict(),
        }


def _validate_child_info(child_info) -> dict:
    if not isinstance(child_info, dict):
        raise InvalidArgumentError("child details are required")

    name = child_info.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InvalidArgumentError("name is required")

    age = require_positive_int(child_info.get("age"), "age")
    if age > MAX_CHILD_AGE:
        raise InvalidArgumentError("age is out of range")

    imei = child_info.get("device_imei")
    if imei is not None:
        if not isinstance(imei, str) or not imei.strip():
            raise InvalidArgumentError("device_imei must be a non-empty string")
        imei = imei.strip()

    return {"name": name.strip(), "age": age, "device_imei": imei}


def _imei_taken(imei: str | None) -> bool:
    if not imei:
        return False
    return db.session.query(Child.id).filter_by(device_imei=imei).first() is not None


def activate(parent_id: int, child_info) -> ActivationResult:
    """
    Consume one of the parent's keys to activate a child device.

    The oldest available key of the parent is claimed by a conditional
    UPDATE that flips is_assigned and stamps assigned_at and a fresh
    valid_until. If no key was claimed nothing else happens, so there is
    never a Child without a consumed key.

    Raises:
        InvalidArgumentError: missing name / bad age / bad device_imei
        NotFoundError / AccessDeniedError: unknown or non-parent account
        ConflictError: device_imei is already registered
        InsufficientInventoryError: the parent holds no available key
    """
    info = _validate_child_info(child_info)
    validity_days = current_app.config.get("KEY_VALIDITY_DAYS", 730)

    def _op():
        parent = require_account(parent_id, ROLE_PARENT)

        if _imei_taken(info["device_imei"]):
            raise ConflictError("A child with this device IMEI is already registered")

        now = utcnow()
        claimed = claim_keys(
            parent.id,
            1,
            {
                "is_assigned": True,
                "assigned_at": now,
                "valid_until": validity_horizon(validity_days, start=now),
            },
        )
        if not claimed:
            raise InsufficientInventoryError("No available key to activate this child")

        child = Child(parent_id=parent.id, **info)
        db.session.add(child)
        db.session.flush()

        key = db.session.get(Key, claimed[0], populate_existing=True)
        key.assigned_to_child_id = child.id

        increment_counters(Account, parent.id, transferred_keys=1, used_keys=1)
        append_transfer_log(
            log_type=LOG_TYPE_ACTIVATE,
            count=1,
            from_account_id=parent.id,
            child_id=child.id,
            notes=f"Key activated for child: {child.name}",
            reference=f"child:{child.id}",
        )
        return ActivationResult(child=child, key=key)

    try:
        result = run_atomic(_op)
    except IntegrityError:
        if _imei_taken(info["device_imei"]):
            # A concurrent activation registered the same device_imei first
            raise ConflictError("A child with this device IMEI is already registered")
        raise
    current_app.logger.info(
        "Parent %s activated child %s with key %s", parent_id, result.child.id, result.key.id
    )
    return result
