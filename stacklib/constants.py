"""
Constants for the CloudFormation stack catalog provider.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Time Constants
# =============================================================================

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_MAX_CONCURRENCY = 3  # Accounts scanned at the same time
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_ASSUME_ROLE_DURATION = SECONDS_PER_HOUR
DEFAULT_SESSION_NAME = "StackCatalogProvider"
DEFAULT_REGION = "us-east-1"

# Credentials are considered expired this many seconds before their real expiry
CREDENTIAL_EXPIRY_SKEW_SECONDS = 5 * SECONDS_PER_MINUTE

# =============================================================================
# Organizations
# =============================================================================

ACCOUNT_STATUS_ACTIVE = "ACTIVE"
ACCOUNT_STATUS_SUSPENDED = "SUSPENDED"

# =============================================================================
# CloudFormation
# =============================================================================

# Stacks in any other status (DELETE_COMPLETE, REVIEW_IN_PROGRESS) are dropped
IN_SCOPE_STACK_STATUSES = frozenset({
    "CREATE_COMPLETE",
    "CREATE_FAILED",
    "CREATE_IN_PROGRESS",
    "DELETE_FAILED",
    "DELETE_IN_PROGRESS",
    "IMPORT_COMPLETE",
    "IMPORT_IN_PROGRESS",
    "IMPORT_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_FAILED",
    "IMPORT_ROLLBACK_IN_PROGRESS",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "ROLLBACK_IN_PROGRESS",
    "UPDATE_COMPLETE",
    "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS",
    "UPDATE_FAILED",
    "UPDATE_IN_PROGRESS",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS",
    "UPDATE_ROLLBACK_FAILED",
    "UPDATE_ROLLBACK_IN_PROGRESS",
})

# Resource types that produce function entities
CFN_LAMBDA_FUNCTION = "AWS::Lambda::Function"
FUNCTION_RESOURCE_TYPES = frozenset({CFN_LAMBDA_FUNCTION})

# Ask for the template after transforms (SAM, macros) have been expanded
TEMPLATE_STAGE = "Processed"

# =============================================================================
# Catalog Entities
# =============================================================================

ENTITY_API_VERSION = "backstage.io/v1alpha1"
ENTITY_KIND = "Resource"
ENTITY_REF_KIND = "resource"

# spec.type values
TYPE_STACK = "aws-cloudformation-stack"
TYPE_FUNCTION = "aws-lambda-function"
TYPE_RUNTIME = "aws-lambda-runtime"

# Identity prefixes
STACK_IDENTITY_PREFIX = "aws-cfn-"
FUNCTION_IDENTITY_PREFIX = "aws-lmb-"
RUNTIME_IDENTITY_PREFIX = "aws-lambda-runtime-"

# SHAKE-256 output length in bytes (hex-encoded to twice this many characters)
IDENTITY_DIGEST_BYTES = 27

# Runtime entities are shared across stacks and accounts
RUNTIME_LIFECYCLE = "production"
RUNTIME_OWNER = "aws"

DEFAULT_LIFECYCLE = "unknown"
DEFAULT_OWNER = "aws"

# Stack tags mapped onto entity fields
DEFAULT_LIFECYCLE_TAG = "lifecycle"
DEFAULT_OWNER_TAG = "owner"
DEFAULT_PROJECT_TAG = "project"

DEFAULT_ANNOTATION_NAMESPACE = "stack-catalog.io"
DEFAULT_PROVIDER_KEY = "cloudformation-stack-provider"

# Annotation names (prefixed with "<namespace>/")
ANNOTATION_REGION = "region"
ANNOTATION_ACCOUNT_ID = "accountId"
ANNOTATION_LOOKED_UP_WITH = "lookedUpWith"
ANNOTATION_FUNCTION_NAME = "functionName"
ANNOTATION_STACK_NAME = "cloudFormationStackName"
ANNOTATION_STACK_ID = "cloudFormationStackId"
ANNOTATION_LOGICAL_ID = "cloudFormationLogicalId"

CONSOLE_LINK_TITLE = "CloudFormation stack in the AWS console"

# =============================================================================
# Mutations
# =============================================================================

MUTATION_TYPE_FULL = "full"

# =============================================================================
# Output
# =============================================================================

SNAPSHOT_FILENAME = "catalog_mutation.json"
REPORT_FILENAME_PREFIX = "cycle_report"
LOG_FILENAME_PREFIX = "stack_catalog_log"
