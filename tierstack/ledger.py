"""
Deployment ledger.

Records, per stack, the fingerprint of the last blueprint that was
provisioned and the outputs it produced. The orchestrator compares the
next blueprint against it to decide whether a stack can be left alone.
"""
import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from tierstack.config.environments import StackProps
from tierstack.errors import ConfigurationError

logger = logging.getLogger(__name__)

LEDGER_VERSION = 1


@dataclass
class LedgerEntry:
    fingerprint: str
    outputs: Dict[str, str] = field(default_factory=dict)
    status: str = "available"
    updated_at: str = ""


class Ledger:
    """
    Stack entries for one project/environment, optionally backed by a JSON file.

    With no path the ledger lives in memory only. Every mutation rewrites the
    file atomically so a crash never leaves a truncated ledger behind.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._entries: Dict[str, LedgerEntry] = self._load()

    @classmethod
    def for_project(cls, state_dir: Union[str, Path], props: StackProps, provider: str = "aws") -> "Ledger":
        """One ledger file per project, environment and provider."""
        return cls(Path(state_dir) / f"{props.project_name}-{props.environment}.{provider}.json")

    def _load(self) -> Dict[str, LedgerEntry]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
            return {name: LedgerEntry(**entry) for name, entry in data.get("stacks", {}).items()}
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"ledger {self.path} is unreadable: {exc}", field="state_dir") from exc

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": LEDGER_VERSION,
            "stacks": {name: asdict(entry) for name, entry in sorted(self._entries.items())},
        }
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, stack_name: str) -> Optional[LedgerEntry]:
        with self._lock:
            return self._entries.get(stack_name)

    def entries(self) -> Dict[str, LedgerEntry]:
        with self._lock:
            return dict(self._entries)

    def record(self, stack_name: str, fingerprint: str, outputs: Mapping[str, str], status: str) -> LedgerEntry:
        entry = LedgerEntry(
            fingerprint=fingerprint,
            outputs=dict(outputs),
            status=status,
            updated_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        with self._lock:
            self._entries[stack_name] = entry
            self._save()
        logger.debug("Ledger updated", extra={"stack": stack_name, "fingerprint": fingerprint[:12]})
        return entry

    def remove(self, stack_name: str) -> None:
        with self._lock:
            if self._entries.pop(stack_name, None) is not None:
                self._save()
