"""Consumer side: filtering, debounce coalescing and dispatch."""

from .config import SubscriberConfig, load_subscriber_config, load_subscriber_configs
from .debounce import DebounceBuffer, DebounceCoalescer, PendingDispatch
from .dispatcher import ConsolePrinter, DispatchOutcome, DispatchStatus, HttpDispatcher
from .filter import EventFilter, FilterSpec
from .runner import SubscriberRunner, build_sink, run_subscribers

__all__ = [
    "ConsolePrinter",
    "DebounceBuffer",
    "DebounceCoalescer",
    "DispatchOutcome",
    "DispatchStatus",
    "EventFilter",
    "FilterSpec",
    "HttpDispatcher",
    "PendingDispatch",
    "SubscriberConfig",
    "SubscriberRunner",
    "build_sink",
    "load_subscriber_config",
    "load_subscriber_configs",
    "run_subscribers",
]
