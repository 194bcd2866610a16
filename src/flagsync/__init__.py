"""flagsync フィーチャーフラグクライアントライブラリ"""

from ._version import __version__
from .client import FlagClient
from .config import (
    ClientConfig,
    EnvOverrides,
    RemoteClientConfig,
    ReportingConfig,
    RetryPolicy,
    load_config,
)
from .evaluator import eval_flag, eval_rule, eval_rules
from .events import CallbackRegistry, EventHub, ListenerRegistry
from .exceptions import (
    FlagError,
    FlagErrorCodes,
    MalformedResponseError,
    PersistenceError,
    SerializationError,
    ServerError,
    TransportError,
)
from .fetch import FetchCoordinator
from .http_client import HttpFlagTransport
from .log import configure_logging
from .models import Condition, Flag, FlagEvalEvent, Operator, Rule, Variation
from .polling import PollingScheduler
from .remote import RemoteFlagClient
from .reporting import UsageReporter
from .snapshot import ConfigSnapshot
from .static import StaticFlagClient
from .storage import FileFlagStorage, FlagStorage, InMemoryFlagStorage
from .transport import FlagTransport

__all__ = [
    "CallbackRegistry",
    "ClientConfig",
    "Condition",
    "ConfigSnapshot",
    "EnvOverrides",
    "EventHub",
    "FetchCoordinator",
    "FileFlagStorage",
    "Flag",
    "FlagClient",
    "FlagError",
    "FlagErrorCodes",
    "FlagEvalEvent",
    "FlagStorage",
    "FlagTransport",
    "HttpFlagTransport",
    "InMemoryFlagStorage",
    "ListenerRegistry",
    "MalformedResponseError",
    "Operator",
    "PersistenceError",
    "PollingScheduler",
    "RemoteClientConfig",
    "RemoteFlagClient",
    "ReportingConfig",
    "RetryPolicy",
    "Rule",
    "SerializationError",
    "ServerError",
    "StaticFlagClient",
    "TransportError",
    "UsageReporter",
    "Variation",
    "__version__",
    "configure_logging",
    "eval_flag",
    "eval_rule",
    "eval_rules",
    "load_config",
]
