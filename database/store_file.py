"""
FileMessageLog — JSON-lines document per contact, durable across restarts.

Data layout:
  {data_dir}/
    %2B573138539155.jsonl      one line per MessageLogEntry, append order
    ...

Features:
  - Survives process restarts (unlike InMemoryMessageLog)
  - No external dependencies (no database server)
  - Appends are a single line write; existing lines are never rewritten
  - Single-process only (no concurrent write safety across processes)

Best for: small deployments, demos, keeping the message documents apart
from the relational records.
"""
from __future__ import annotations

import structlog
from pathlib import Path
from urllib.parse import quote, unquote

from pydantic import ValidationError

from database.store_memory import InMemoryMessageLog
from models.schemas import MessageLogEntry

logger = structlog.get_logger()

_SUFFIX = ".jsonl"


class FileMessageLog(InMemoryMessageLog):
    """
    Extends InMemoryMessageLog with JSON-lines persistence.

    On init: loads every contact document from disk into memory.
    On every append: writes the new entry as one line to the contact's file.
    """

    def __init__(self, data_dir: str = "./data/messages"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_message_log_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, contact_id: str) -> Path:
        return self._data_dir / f"{quote(contact_id, safe='')}{_SUFFIX}"

    def _load_all(self):
        for path in sorted(self._data_dir.glob(f"*{_SUFFIX}")):
            contact_id = unquote(path.name[: -len(_SUFFIX)])
            loaded = skipped = 0
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = MessageLogEntry.model_validate_json(line)
                    except ValidationError as e:
                        skipped += 1
                        logger.warning("file_message_log_bad_line",
                                       contact_id=contact_id, error=str(e))
                        continue
                    self._logs[contact_id].append(entry)
                    loaded += 1
            logger.debug("file_message_log_loaded",
                         contact_id=contact_id, entries=loaded, skipped=skipped)

    async def append(self, entry: MessageLogEntry) -> MessageLogEntry:
        with open(self._file_path(entry.contact_id), "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        return await super().append(entry)
