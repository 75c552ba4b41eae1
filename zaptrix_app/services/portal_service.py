# zaptrix_app/services/portal_service.py
import datetime
import logging
from contextlib import contextmanager
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..exceptions import ConflictError, TransientApiError
from ..models.portal_credential import PortalCredential
from ..utils import db_utils
from ..utils.time_utils import utcnow, ensure_utc

logger = logging.getLogger(__name__)


def normalize_portal_address(portal_address: str) -> str:
    address = (portal_address or '').strip().rstrip('/')
    if address and '://' not in address:
        address = f"https://{address}"
    return address


class PortalCredentialData(BaseModel):
    """Detached copy of a portal credential row."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    portal_address: str
    client_id: str
    client_secret: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def redacted(self) -> dict:
        return {
            'id': self.id,
            'portal_address': self.portal_address,
            'has_access_token': bool(self.access_token),
            'token_expires_at': self.token_expires_at.isoformat() if self.token_expires_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


def _to_data(row: PortalCredential) -> PortalCredentialData:
    data = PortalCredentialData.model_validate(row)
    return data.model_copy(update={'token_expires_at': ensure_utc(data.token_expires_at)})


class PortalService:
    """Repository for portal_credentials (tenant OAuth state)."""

    def __init__(self, session_scope: Callable = db_utils.get_db_session):
        self.session_scope = session_scope

    def _require(self, session, action: str):
        if not session:
            logger.error(f"Cannot {action}: DB session not available.")
            raise TransientApiError(f"Database unavailable while trying to {action}")
        return session

    @contextmanager
    def _session(self, action: str):
        try:
            with self.session_scope() as session:
                yield self._require(session, action)
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error while trying to {action}: {e}")
            raise TransientApiError(f"Database error while trying to {action}") from e

    def find_by_address(self, portal_address: str) -> Optional[PortalCredentialData]:
        address = normalize_portal_address(portal_address)
        with self._session(f"load portal {address}") as session:
            row = session.query(PortalCredential).filter_by(portal_address=address).first()
            return _to_data(row) if row else None

    def find_by_id(self, portal_id: str) -> Optional[PortalCredentialData]:
        with self._session(f"load portal {portal_id}") as session:
            row = session.get(PortalCredential, portal_id)
            return _to_data(row) if row else None

    def list_all(self) -> List[PortalCredentialData]:
        with self._session("list portals") as session:
            return [_to_data(row) for row in session.query(PortalCredential).order_by(PortalCredential.created_at)]

    def create(self, portal_address: str, client_id: str, client_secret: str,
               access_token: Optional[str] = None, refresh_token: Optional[str] = None,
               expires_in: Optional[int] = None) -> PortalCredentialData:
        address = normalize_portal_address(portal_address)
        try:
            with self._session(f"create portal {address}") as session:
                if session.query(PortalCredential).filter_by(portal_address=address).first():
                    raise ConflictError(address, message=f"Portal already provisioned: {address}")
                row = PortalCredential(
                    portal_address=address,
                    client_id=client_id,
                    client_secret=client_secret,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=utcnow() + datetime.timedelta(seconds=expires_in) if expires_in else None,
                )
                session.add(row)
                session.flush()
                data = _to_data(row)
        except IntegrityError as e:
            raise ConflictError(address, message=f"Portal already provisioned: {address}") from e
        logger.info(f"New portal provisioned: {address} (id {data.id}).")
        return data

    def update_tokens(self, portal_address: str, access_token: str, refresh_token: str,
                      expires_at: datetime.datetime) -> bool:
        address = normalize_portal_address(portal_address)
        with self._session(f"update tokens for portal {address}") as session:
            updated = session.query(PortalCredential).filter_by(portal_address=address).update({
                'access_token': access_token,
                'refresh_token': refresh_token,
                'token_expires_at': expires_at,
                'updated_at': utcnow(),
            }, synchronize_session=False)
        logger.debug(f"Tokens updated for portal {address} (rows: {updated}).")
        return bool(updated)

    def expire_token(self, portal_address: str) -> None:
        address = normalize_portal_address(portal_address)
        with self._session(f"expire token for portal {address}") as session:
            session.query(PortalCredential).filter_by(portal_address=address).update({
                'token_expires_at': utcnow(),
                'updated_at': utcnow(),
            }, synchronize_session=False)
        logger.info(f"Stored access token for portal {address} marked as expired.")
