import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional


logger = logging.getLogger(__name__)


class JsonLinesFeed:
    """Reads normalized tick events, one JSON object per line, from a file or stdin.

    Stands in for the upstream normalizer; reconnects and exchange specifics
    live on the other side of that boundary.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path) if path else None
        self.lines_read = 0
        self.lines_skipped = 0
        self._stopped = False

    def stop(self) -> None:
        self._stopped = True

    async def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        fh = self.path.open('r') if self.path else sys.stdin
        try:
            while not self._stopped:
                line = await asyncio.to_thread(fh.readline)
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                self.lines_read += 1
                try:
                    event = json.loads(line)
                except json.JSONDecodeError as exc:
                    self.lines_skipped += 1
                    logger.warning("Skipping malformed feed line %d: %s", self.lines_read, exc)
                    continue
                yield event
        finally:
            if self.path:
                fh.close()
