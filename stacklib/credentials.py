"""
Chained cross-account credentials.

The resolver assumes a source role once with the base credentials (the
"top-level" credentials), then uses those to assume the destination role in
each account. Both hops are cached until shortly before the expiry STS
reports for them.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
)

from .constants import (
    CREDENTIAL_EXPIRY_SKEW_SECONDS,
    DEFAULT_ASSUME_ROLE_DURATION,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_SESSION_NAME,
)
from .utils import CredentialError, mask_account_id, retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScopedCredentials:
    """Temporary credentials for one role, with their expiry."""
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: Optional[datetime]
    role_arn: str

    @classmethod
    def from_sts(cls, response_credentials: Dict, role_arn: str) -> "ScopedCredentials":
        expiration = response_credentials.get('Expiration')
        if isinstance(expiration, datetime) and expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return cls(
            access_key_id=response_credentials['AccessKeyId'],
            secret_access_key=response_credentials['SecretAccessKey'],
            session_token=response_credentials['SessionToken'],
            expiration=expiration,
            role_arn=role_arn,
        )

    def is_expired(self, now: Optional[datetime] = None,
                   skew_seconds: int = CREDENTIAL_EXPIRY_SKEW_SECONDS) -> bool:
        """True once the credentials are within skew_seconds of expiring."""
        if self.expiration is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.expiration - timedelta(seconds=skew_seconds)

    def session(self, region: Optional[str] = None) -> boto3.Session:
        """Create a boto3 session backed by these credentials."""
        return boto3.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
            region_name=region,
        )


@retry_with_backoff(max_attempts=DEFAULT_RETRY_ATTEMPTS,
                    exceptions=(EndpointConnectionError, ConnectTimeoutError))
def _assume_role(sts_client, params: Dict) -> Dict:
    return sts_client.assume_role(**params)['Credentials']


def _partition_of(role_arn: Optional[str]) -> str:
    if role_arn and role_arn.startswith('arn:'):
        return role_arn.split(':')[1] or 'aws'
    return 'aws'


class CredentialChainResolver:
    """
    Resolve short-lived, role-scoped credentials per account.

    Args:
        destination_role_name: Role name present in every account
        source_role_arn: Role assumed with the base credentials to obtain the
            top-level credentials. When None the base credentials are used
            directly as the top-level credentials.
        base_session: Session holding the base credentials (default: boto3 default chain)
        external_id: Optional external ID passed on every AssumeRole call
        session_name: RoleSessionName recorded in CloudTrail
        duration_seconds: Requested lifetime of the assumed credentials
        clock: Returns the current UTC time (injectable for tests)
    """

    def __init__(
        self,
        destination_role_name: str,
        source_role_arn: Optional[str] = None,
        base_session: Optional[boto3.Session] = None,
        external_id: Optional[str] = None,
        session_name: str = DEFAULT_SESSION_NAME,
        duration_seconds: int = DEFAULT_ASSUME_ROLE_DURATION,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.destination_role_name = destination_role_name
        self.source_role_arn = source_role_arn
        self.base_session = base_session or boto3.Session()
        self.external_id = external_id
        self.session_name = session_name
        self.duration_seconds = duration_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._partition = _partition_of(source_role_arn)

        self._lock = threading.Lock()
        self._top_level: Optional[ScopedCredentials] = None
        self._cache: Dict[str, ScopedCredentials] = {}

    def role_arn_for(self, account_id: str) -> str:
        """Role ARN assumed in account_id."""
        return f"arn:{self._partition}:iam::{account_id}:role/{self.destination_role_name}"

    def _assume(self, session: boto3.Session, role_arn: str) -> ScopedCredentials:
        params = {
            'RoleArn': role_arn,
            'RoleSessionName': self.session_name,
            'DurationSeconds': self.duration_seconds,
        }
        if self.external_id:
            params['ExternalId'] = self.external_id
        sts = session.client('sts')
        return ScopedCredentials.from_sts(_assume_role(sts, params), role_arn)

    def _top_level_session(self) -> boto3.Session:
        # Caller holds self._lock
        if not self.source_role_arn:
            return self.base_session
        if self._top_level is None or self._top_level.is_expired(self._clock()):
            logger.info(f"Assuming source role {mask_account_id(self.source_role_arn)}")
            try:
                self._top_level = self._assume(self.base_session, self.source_role_arn)
            except (ClientError, BotoCoreError) as e:
                raise CredentialError(
                    f"Failed to assume source role {mask_account_id(self.source_role_arn)}: {e}",
                    account_id='', original_error=e
                ) from e
        return self._top_level.session()

    def top_level_session(self) -> boto3.Session:
        """
        Session holding the top-level credentials (used for Organizations).

        Raises:
            CredentialError: If the source role cannot be assumed
        """
        with self._lock:
            return self._top_level_session()

    def resolve(self, account_id: str) -> ScopedCredentials:
        """
        Return credentials for the destination role in account_id.

        Cached per account until shortly before they expire.

        Raises:
            CredentialError: If the role cannot be assumed. Only this account is affected.
        """
        with self._lock:
            cached = self._cache.get(account_id)
            if cached is not None and not cached.is_expired(self._clock()):
                return cached
            top_level = self._top_level_session()

        role_arn = self.role_arn_for(account_id)
        try:
            credentials = self._assume(top_level, role_arn)
        except (ClientError, BotoCoreError) as e:
            raise CredentialError(
                f"Failed to assume role {mask_account_id(role_arn)} in account {account_id}: {e}",
                account_id=account_id, original_error=e
            ) from e

        with self._lock:
            self._cache[account_id] = credentials
        logger.debug(f"Assumed role in account {account_id}, expires {credentials.expiration}")
        return credentials

    def invalidate(self, account_id: Optional[str] = None) -> None:
        """Drop cached credentials for one account, or all of them."""
        with self._lock:
            if account_id is None:
                self._cache.clear()
                self._top_level = None
            else:
                self._cache.pop(account_id, None)
