"""
Reporting Package

Renders credential records into the key/value output consumed by
deployment scripts.
"""

from .keyvalue import KeyValueReporter, env_prefix, record_lines

__all__ = ["KeyValueReporter", "env_prefix", "record_lines"]
