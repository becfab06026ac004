"""
linepipe — Line-oriented text relay.

Reads text from a byte stream line by line, decorates each line, copies it to
another byte stream and fires callbacks when a line matches a pattern.
Built for wrapping a child process's output so a supervisor can forward it
and react to milestones such as "service is up".
"""

from linepipe.core.config import Hook, RelayConfig, RelayDraft, load_config
from linepipe.core.relay import ErrorKind, Relay, RelayError, RelayHandle, RelayOutcome
from linepipe.core.supervisor import SupervisedProcess

__version__ = "1.0.0"

__all__ = [
    "ErrorKind",
    "Hook",
    "Relay",
    "RelayConfig",
    "RelayDraft",
    "RelayError",
    "RelayHandle",
    "RelayOutcome",
    "SupervisedProcess",
    "load_config",
]
