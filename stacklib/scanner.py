"""
CloudFormation stack scanning.

For one account and region: list the in-scope stacks, then for each stack
fetch and parse its template and list its resources. A stack that cannot be
read is skipped on its own; failures of the stack listing itself escalate to
the caller.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, List, Optional

import yaml
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
)

from .constants import DEFAULT_RETRY_ATTEMPTS, IN_SCOPE_STACK_STATUSES, TEMPLATE_STAGE
from .credentials import ScopedCredentials
from .models import Account, ResourceSummary, ScannedStack, StackRecord, TemplateDocument
from .utils import StackFetchError, TemplateError, retry_with_backoff, tags_to_dict

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ScopedCredentials, str], Any]


class CloudFormationLoader(yaml.SafeLoader):
    """SafeLoader that accepts CloudFormation short-form intrinsic functions."""


def _construct_intrinsic(loader, tag_suffix, node):
    # !GetAtt is written as "Resource.Attribute" in its short form
    if tag_suffix == 'GetAtt' and isinstance(node, yaml.ScalarNode):
        return {'Fn::GetAtt': loader.construct_scalar(node).split('.', 1)}
    key = 'Ref' if tag_suffix == 'Ref' else f'Fn::{tag_suffix}'
    if isinstance(node, yaml.ScalarNode):
        return {key: loader.construct_scalar(node)}
    if isinstance(node, yaml.SequenceNode):
        return {key: loader.construct_sequence(node, deep=True)}
    return {key: loader.construct_mapping(node, deep=True)}


CloudFormationLoader.add_multi_constructor('!', _construct_intrinsic)


def parse_template(body: Any, stack_name: str = "") -> TemplateDocument:
    """
    Parse a template body (JSON or YAML) into a TemplateDocument.

    botocore already decodes JSON bodies into dicts, so mappings are accepted
    as-is.

    Raises:
        TemplateError: If the body is empty or not a template
    """
    if body is None or body == '' or body == {}:
        raise TemplateError(f"Stack {stack_name} has no template body", stack_name=stack_name)

    if isinstance(body, dict):
        return TemplateDocument.from_template(body)

    try:
        template = json.loads(body)
    except ValueError:
        try:
            template = yaml.load(body, Loader=CloudFormationLoader)  # noqa: S506 - SafeLoader subclass
        except yaml.YAMLError as e:
            raise TemplateError(
                f"Stack {stack_name} template is neither JSON nor YAML: {e}",
                stack_name=stack_name, original_error=e
            ) from e

    if not isinstance(template, dict):
        raise TemplateError(f"Stack {stack_name} template is not a mapping", stack_name=stack_name)
    return TemplateDocument.from_template(template)


def is_in_scope(status: str) -> bool:
    """True if a stack in this status should produce entities."""
    return status in IN_SCOPE_STACK_STATUSES


def default_client_factory(credentials: ScopedCredentials, region: str):
    """CloudFormation client for one account/region."""
    return credentials.session(region).client('cloudformation', region_name=region)


@retry_with_backoff(max_attempts=DEFAULT_RETRY_ATTEMPTS,
                    exceptions=(EndpointConnectionError, ConnectTimeoutError))
def _get_template_body(cfn_client, stack_name: str) -> Any:
    response = cfn_client.get_template(StackName=stack_name, TemplateStage=TEMPLATE_STAGE)
    return response.get('TemplateBody')


@dataclass
class SkippedStack:
    """A stack that was in scope but could not be read."""
    account_id: str
    region: str
    stack_name: str
    reason: str


@dataclass
class ScanStats:
    stacks_seen: int = 0
    stacks_out_of_scope: int = 0
    stacks_scanned: int = 0
    skipped: List[SkippedStack] = field(default_factory=list)


class StackScanner:
    """
    Scan the CloudFormation stacks of one account/region.

    Args:
        client_factory: Builds a CloudFormation client from credentials and region
    """

    def __init__(self, client_factory: Optional[ClientFactory] = None):
        self.client_factory = client_factory or default_client_factory

    def iter_stacks(self, cfn_client, account_id: str, region: str,
                    stats: Optional[ScanStats] = None) -> Iterator[StackRecord]:
        """
        Paginate DescribeStacks, yielding only in-scope stacks.

        Errors while paginating propagate to the caller.
        """
        paginator = cfn_client.get_paginator('describe_stacks')
        for page in paginator.paginate():
            for stack in page.get('Stacks', []):
                if stats is not None:
                    stats.stacks_seen += 1
                status = stack.get('StackStatus', '')
                if not is_in_scope(status):
                    logger.debug(
                        f"Dropping stack {stack.get('StackName')} in {account_id}/{region}: "
                        f"status {status} is out of scope"
                    )
                    if stats is not None:
                        stats.stacks_out_of_scope += 1
                    continue
                yield StackRecord(
                    stack_id=stack.get('StackId', ''),
                    stack_name=stack.get('StackName', ''),
                    status=status,
                    account_id=account_id,
                    region=region,
                    tags=tags_to_dict(stack.get('Tags', [])),
                )

    def fetch_template(self, cfn_client, stack: StackRecord) -> TemplateDocument:
        """
        Fetch and parse the processed template of a stack.

        Raises:
            TemplateError: If the body is missing or unparseable
            StackFetchError: If GetTemplate fails
        """
        try:
            body = _get_template_body(cfn_client, stack.stack_name)
        except (ClientError, BotoCoreError) as e:
            raise StackFetchError(
                f"Failed to get template of stack {stack.stack_name}: {e}",
                stack_name=stack.stack_name, original_error=e
            ) from e
        return parse_template(body, stack.stack_name)

    def list_resources(self, cfn_client, stack: StackRecord) -> List[ResourceSummary]:
        """
        Paginate ListStackResources for a stack.

        Raises:
            StackFetchError: If any page cannot be fetched
        """
        resources = []
        try:
            paginator = cfn_client.get_paginator('list_stack_resources')
            for page in paginator.paginate(StackName=stack.stack_id or stack.stack_name):
                for summary in page.get('StackResourceSummaries', []):
                    resources.append(ResourceSummary(
                        logical_id=summary.get('LogicalResourceId', ''),
                        physical_id=summary.get('PhysicalResourceId', ''),
                        resource_type=summary.get('ResourceType', ''),
                        status=summary.get('ResourceStatus', ''),
                    ))
        except (ClientError, BotoCoreError) as e:
            raise StackFetchError(
                f"Failed to list resources of stack {stack.stack_name}: {e}",
                stack_name=stack.stack_name, original_error=e
            ) from e
        return resources

    def scan(
        self,
        account: Account,
        region: str,
        credentials: ScopedCredentials,
        stats: Optional[ScanStats] = None
    ) -> Iterator[ScannedStack]:
        """
        Yield every readable in-scope stack of an account/region.

        A stack whose template or resources cannot be read is logged,
        recorded in stats.skipped and skipped; the rest of the region is
        still scanned. Errors listing the stacks themselves propagate.
        """
        stats = stats if stats is not None else ScanStats()
        cfn = self.client_factory(credentials, region)

        for stack in self.iter_stacks(cfn, account.id, region, stats):
            try:
                template = self.fetch_template(cfn, stack)
                resources = self.list_resources(cfn, stack)
            except StackFetchError as e:
                logger.warning(f"Skipping stack {stack.stack_name} in {account.id}/{region}: {e}")
                stats.skipped.append(SkippedStack(
                    account_id=account.id,
                    region=region,
                    stack_name=stack.stack_name,
                    reason=str(e),
                ))
                continue

            stats.stacks_scanned += 1
            logger.debug(f"Scanned stack {stack.stack_name} in {account.id}/{region}: "
                         f"{len(resources)} resources")
            yield ScannedStack(
                stack=stack,
                resources=resources,
                template=template,
                role_arn=credentials.role_arn,
            )
