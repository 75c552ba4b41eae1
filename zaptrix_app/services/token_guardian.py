# zaptrix_app/services/token_guardian.py
"""
Token Guardian: every Bitrix24 REST call asks it for a bearer token first.

Tokens are refreshed lazily at call time, never on a timer. A token is
refreshed once ``now >= token_expires_at - margin``. Refreshes for one portal
are single-flight: callers that lose the race wait on the portal lock, re-read
the stored credential and reuse the winner's token.
"""
import datetime
import enum
import logging
from typing import Callable, Dict, Optional

import requests

from ..exceptions import AuthRefreshError, PortalNotConfiguredError
from ..utils.lock_utils import KeyedLock
from ..utils.time_utils import utcnow, ensure_utc
from .portal_service import PortalService, PortalCredentialData, normalize_portal_address

logger = logging.getLogger(__name__)


class TokenState(str, enum.Enum):
    VALID = 'VALID'
    EXPIRING = 'EXPIRING'
    REFRESHING = 'REFRESHING'
    INVALID = 'INVALID'


class TokenGuardian:

    def __init__(self, portal_service: PortalService, http_session: Optional[requests.Session] = None,
                 lock: Optional[KeyedLock] = None, refresh_margin_seconds: int = 300,
                 timeout: float = 30.0, lock_timeout_seconds: int = 45,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.portal_service = portal_service
        self.http = http_session or requests.Session()
        self.lock = lock or KeyedLock()
        self.refresh_margin = datetime.timedelta(seconds=refresh_margin_seconds)
        self.timeout = timeout
        self.lock_timeout_seconds = lock_timeout_seconds
        self.clock = clock
        self._states: Dict[str, TokenState] = {}

    def state_of(self, portal_address: str) -> TokenState:
        return self._states.get(normalize_portal_address(portal_address), TokenState.INVALID)

    def classify(self, credential: Optional[PortalCredentialData]) -> TokenState:
        if credential is None:
            return TokenState.INVALID
        expires_at = ensure_utc(credential.token_expires_at)
        if not credential.access_token or expires_at is None:
            return TokenState.EXPIRING
        if self.clock() >= expires_at - self.refresh_margin:
            return TokenState.EXPIRING
        return TokenState.VALID

    def _load(self, address: str) -> PortalCredentialData:
        credential = self.portal_service.find_by_address(address)
        if credential is None:
            self._states[address] = TokenState.INVALID
            logger.warning(f"Portal configuration not found for {address}.")
            raise PortalNotConfiguredError(address)
        return credential

    def get_access_token(self, portal_address: str) -> str:
        address = normalize_portal_address(portal_address)
        credential = self._load(address)
        if self.classify(credential) == TokenState.VALID:
            self._states[address] = TokenState.VALID
            return credential.access_token

        self._states[address] = TokenState.EXPIRING
        with self.lock.hold(f"token-refresh:{address}", timeout=self.lock_timeout_seconds,
                            blocking_timeout=self.lock_timeout_seconds):
            # Another worker may have refreshed while this one waited on the lock.
            credential = self._load(address)
            if self.classify(credential) == TokenState.VALID:
                logger.debug(f"Token for portal {address} was refreshed by a concurrent caller.")
                self._states[address] = TokenState.VALID
                return credential.access_token
            return self._refresh(credential)

    def _refresh(self, credential: PortalCredentialData) -> str:
        address = credential.portal_address
        self._states[address] = TokenState.REFRESHING
        logger.info(f"Access token for portal {address} expired or about to expire, refreshing.")

        if not credential.refresh_token:
            self._states[address] = TokenState.INVALID
            raise AuthRefreshError(address, f"No refresh token stored for portal {address}")

        try:
            response = self.http.get(
                f"{address}/oauth/token/",
                params={
                    'grant_type': 'refresh_token',
                    'client_id': credential.client_id,
                    'client_secret': credential.client_secret,
                    'refresh_token': credential.refresh_token,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            self._states[address] = TokenState.INVALID
            logger.error(f"Token refresh request failed for portal {address}: {e}")
            raise AuthRefreshError(address) from e
        except ValueError as e:
            self._states[address] = TokenState.INVALID
            logger.error(f"Token refresh for portal {address} returned a non-JSON body: {e}")
            raise AuthRefreshError(address) from e

        access_token = data.get('access_token') if isinstance(data, dict) else None
        refresh_token = data.get('refresh_token') if isinstance(data, dict) else None
        expires_in = data.get('expires_in') if isinstance(data, dict) else None
        if not access_token or not refresh_token or not expires_in:
            self._states[address] = TokenState.INVALID
            error = data.get('error') if isinstance(data, dict) else None
            logger.error(f"Token refresh for portal {address} returned an unusable body (error: {error}).")
            raise AuthRefreshError(address, f"Token refresh rejected for portal {address}: {error or 'missing fields'}")

        expires_at = self.clock() + datetime.timedelta(seconds=int(expires_in))
        self.portal_service.update_tokens(address, access_token, refresh_token, expires_at)
        self._states[address] = TokenState.VALID
        logger.info(f"Access token for portal {address} refreshed, valid until {expires_at.isoformat()}.")
        return access_token

    def invalidate(self, portal_address: str) -> None:
        """Forces a refresh on the next call, e.g. after the CRM reported expired_token."""
        address = normalize_portal_address(portal_address)
        self.portal_service.expire_token(address)
        self._states[address] = TokenState.EXPIRING
