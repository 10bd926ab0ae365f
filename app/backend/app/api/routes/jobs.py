"""Scheduled job endpoints invoked by the platform cron."""

from __future__ import annotations

import secrets
from datetime import date

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.dependencies import get_db_session
from app.services.expiration_detector import ExpirationDetector
from app.services.notifications import NotificationPublisher, get_notification_publisher

router = APIRouter(prefix="/jobs", tags=["jobs"])


def require_cron_secret(authorization: str | None = Header(default=None, alias="Authorization")) -> None:
    """Accept only ``Authorization: Bearer <cron_secret>``."""

    secret = get_settings().cron_secret
    if not secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron jobs are disabled.")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron credentials.")


@router.post("/detect-expired-allocations", dependencies=[Depends(require_cron_secret)])
def detect_expired_allocations(
    today: date | None = None,
    db: Session = Depends(get_db_session),
    publisher: NotificationPublisher = Depends(get_notification_publisher),
) -> dict[str, int]:
    detector = ExpirationDetector(db, publisher)
    return detector.detect_expired_allocations(today=today).as_dict()
