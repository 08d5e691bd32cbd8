"""
Organization account enumeration.
"""
import logging
from typing import Iterable, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .constants import ACCOUNT_STATUS_ACTIVE, ACCOUNT_STATUS_SUSPENDED
from .models import Account
from .utils import DiscoveryError, get_error_code

logger = logging.getLogger(__name__)


def list_accounts(session: boto3.Session) -> Iterator[Account]:
    """
    Lazily list every account in the AWS Organization.

    Requires organizations:ListAccounts permission. The sequence is finite
    and not restartable: call again to re-issue the listing.

    Raises:
        DiscoveryError: If the listing cannot be completed
    """
    try:
        org = session.client('organizations')
        paginator = org.get_paginator('list_accounts')

        for page in paginator.paginate():
            for account in page.get('Accounts', []):
                yield Account(
                    id=account.get('Id', ''),
                    name=account.get('Name', ''),
                    status=account.get('Status', 'UNKNOWN'),
                )
    except ClientError as e:
        error_code = get_error_code(e)
        if error_code == 'AWSOrganizationsNotInUseException':
            message = "AWS Organizations is not enabled for this account"
        elif error_code in ('AccessDeniedException', 'AccessDenied'):
            message = "Access denied to Organizations API. Need organizations:ListAccounts permission."
        else:
            message = f"Failed to list organization accounts: {e}"
        raise DiscoveryError(message) from e
    except BotoCoreError as e:
        raise DiscoveryError(f"Failed to list organization accounts: {e}") from e


def select_accounts(
    accounts: Iterable[Account],
    skip_accounts: Optional[Iterable[str]] = None,
    include_suspended: bool = False
) -> List[Account]:
    """
    Keep the accounts a cycle should scan.

    ACTIVE accounts are always kept, SUSPENDED ones only when asked for.
    Accounts listed in skip_accounts are dropped.
    """
    skip = set(skip_accounts or ())
    allowed = {ACCOUNT_STATUS_ACTIVE}
    if include_suspended:
        allowed.add(ACCOUNT_STATUS_SUSPENDED)

    selected = []
    for account in accounts:
        if account.id in skip:
            logger.info(f"Skipping account {account.id} ({account.name}): listed in skip_accounts")
            continue
        if account.status not in allowed:
            logger.debug(f"Skipping account {account.id} ({account.name}): status {account.status}")
            continue
        selected.append(account)
    return selected
