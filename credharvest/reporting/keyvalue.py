"""
Key/Value Output

Writes one ``KEY=value`` line per credential field, grouped by service, in
the order the services were configured. Values are shell-quoted where needed
so the output can be sourced.
"""

import os
import re
import shlex
from pathlib import Path
from typing import IO, Iterable, List

import structlog

from ..models import CredentialRecord


def env_prefix(service: str) -> str:
    """Upper-cased service name with non-alphanumerics turned into ``_``."""
    return re.sub(r'[^A-Za-z0-9]', '_', service).upper()


def record_lines(record: CredentialRecord) -> List[str]:
    prefix = env_prefix(record.service)
    lines = [f"{prefix}_URL={shlex.quote(record.base_url)}"]

    if record.secret_kind:
        lines.append(f"{prefix}_USERNAME={shlex.quote(record.username or '')}")
        key = "TOKEN" if record.secret_kind == "token" else "PASSWORD"
        lines.append(f"{prefix}_{key}={shlex.quote(record.secret or '')}")

    lines.append(f"{prefix}_STATUS={record.status.value}")
    return lines


class KeyValueReporter:
    """Renders credential records as shell-sourceable key/value lines."""

    def __init__(self):
        self.logger = structlog.get_logger(__name__)

    def render(self, records: Iterable[CredentialRecord]) -> str:
        lines = []
        for record in records:
            lines.extend(record_lines(record))
        return "\n".join(lines) + "\n" if lines else ""

    def write(self, records: Iterable[CredentialRecord], stream: IO[str]) -> None:
        stream.write(self.render(records))
        stream.flush()

    def write_file(self, records: Iterable[CredentialRecord], output_path: str,
                   mode: int = 0o600) -> str:
        """
        Write records to a file readable only by its owner.

        Args:
            records: Records to write
            output_path: Destination file, replaced if it exists
            mode: Permission bits for the file

        Returns:
            Path to the written file
        """
        output_file = Path(output_path).expanduser()
        output_file.parent.mkdir(parents=True, exist_ok=True)
        content = self.render(records)

        fd = os.open(str(output_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        # O_CREAT leaves the mode of an existing file alone
        os.chmod(str(output_file), mode)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(content)

        self.logger.info("Credentials written", output_path=str(output_file),
                         lines=content.count("\n"))
        return str(output_file)

