"""
Stack catalog provider library.
"""
# Import constants module for easy access
from . import constants
from .config import ConfigError, Settings, generate_sample_config, load_config, settings_from_config
from .credentials import CredentialChainResolver, ScopedCredentials
from .emitter import (
    CatalogSink,
    HttpCatalogSink,
    JsonFileSink,
    MemorySink,
    ReconciliationEmitter,
)
from .engine import CycleReport, RefreshEngine
from .entities import (
    EntityBuilder,
    assemble_snapshot,
    function_identity,
    identity,
    runtime_identity,
    stack_identity,
)
from .models import (
    Account,
    DependencyEdge,
    Entity,
    RefreshSnapshot,
    ResourceSummary,
    StackRecord,
)
from .organizations import list_accounts, select_accounts
from .orchestrator import run_cycle
from .scanner import StackScanner, parse_template
from .utils import (
    CredentialError,
    CycleInProgressError,
    DiscoveryError,
    SinkError,
    StackCatalogError,
    StackFetchError,
    TemplateError,
    generate_run_id,
    get_timestamp,
    setup_logging,
    write_json,
)

__all__ = [
    # Constants
    'constants',
    # Config
    'ConfigError',
    'Settings',
    'generate_sample_config',
    'load_config',
    'settings_from_config',
    # Models
    'Account',
    'DependencyEdge',
    'Entity',
    'RefreshSnapshot',
    'ResourceSummary',
    'StackRecord',
    # Components
    'list_accounts',
    'select_accounts',
    'CredentialChainResolver',
    'ScopedCredentials',
    'StackScanner',
    'parse_template',
    'EntityBuilder',
    'assemble_snapshot',
    'identity',
    'stack_identity',
    'function_identity',
    'runtime_identity',
    'run_cycle',
    'CatalogSink',
    'HttpCatalogSink',
    'JsonFileSink',
    'MemorySink',
    'ReconciliationEmitter',
    'CycleReport',
    'RefreshEngine',
    # Errors
    'StackCatalogError',
    'DiscoveryError',
    'CredentialError',
    'StackFetchError',
    'TemplateError',
    'SinkError',
    'CycleInProgressError',
    # Utils
    'generate_run_id',
    'get_timestamp',
    'setup_logging',
    'write_json',
]
