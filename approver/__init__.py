"""Approver - approval record lifecycle engine.

This package manages human-auditable approval requests: a requester asks an
approver to authorize an action, the approver decides, and either party can
cancel or the request times out. Records live in a plain key/value store with
secondary indexes maintained by the package itself.
"""

__version__ = "0.1.0"
__author__ = "Approver Contributors"

from approver.config import Settings, get_settings, load_settings_from_file, set_settings

__all__ = [
    "Settings",
    "__version__",
    "get_settings",
    "load_settings_from_file",
    "set_settings",
]
