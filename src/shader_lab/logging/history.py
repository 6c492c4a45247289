from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from shader_lab.core.types import IterationRecord

if TYPE_CHECKING:
    from shader_lab.core.session import Session

logger = logging.getLogger(__name__)


def record_to_dict(record: IterationRecord) -> dict:
    verdict = record.verdict
    return {
        "index": record.index,
        "kind": record.kind.value,
        "significant": record.significant,
        "success": record.success,
        "prompt": record.prompt,
        "model": record.model,
        "feedback": record.feedback,
        "reflection": record.reflection,
        "failure": record.failure.value if record.failure else None,
        "error": record.error,
        "verdict": {
            "compiled": verdict.compiled,
            "linked": verdict.linked,
            "has_anomaly": verdict.has_anomaly,
            "anomaly_reason": verdict.anomaly_reason,
            "diagnostic_log": verdict.diagnostic_log,
            "metrics": verdict.metrics.to_dict(),
            "evidence": [e.reference for e in verdict.evidence if e.reference],
        },
    }


class HistoryLog:
    """Append-only record of one session's iterations.

    With a root directory, every session gets its own session_<timestamp>
    directory holding records, artifacts and screenshots; without one the log
    lives only in memory. A session directory nothing was appended to is reused
    by the next reset.
    """

    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = root_dir
        self.session_dir: Path | None = None
        self._records: list[IterationRecord] = []
        self._sessions_started = 0

    def reset(self) -> None:
        unused = self.session_dir is not None and not self._records
        self._records = []
        if self.root_dir is None or unused:
            return

        self._sessions_started += 1
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = f"session_{timestamp}"
        if self._sessions_started > 1:
            name += f"_{self._sessions_started}"
        self.session_dir = self.root_dir / name
        for subdir in ("records", "artifacts", "screenshots"):
            (self.session_dir / subdir).mkdir(parents=True, exist_ok=True)

    def append(self, record: IterationRecord) -> IterationRecord:
        if self._records and record.index <= self._records[-1].index:
            raise ValueError(
                f"Record index {record.index} is not after {self._records[-1].index}"
            )
        if self.session_dir is not None:
            record = self._persist(record)
        self._records.append(record)
        return record

    def list_all(self) -> list[IterationRecord]:
        return list(self._records)

    def list_significant(self) -> list[IterationRecord]:
        return [r for r in self._records if r.significant]

    def __len__(self) -> int:
        return len(self._records)

    def _persist(self, record: IterationRecord) -> IterationRecord:
        assert self.session_dir is not None
        evidence = []
        for i, item in enumerate(record.verdict.evidence):
            path = (
                self.session_dir / "screenshots"
                / f"screenshot_iter{record.index}_{i}.{item.extension}"
            )
            path.write_bytes(item.data)
            evidence.append(replace(item, iteration=record.index, reference=str(path)))
        stored = replace(record, verdict=replace(record.verdict, evidence=tuple(evidence)))

        (self.session_dir / "artifacts" / f"iter_{record.index:03d}.frag").write_text(
            record.artifact
        )
        (self.session_dir / "records" / f"iter_{record.index:03d}.json").write_text(
            json.dumps(record_to_dict(stored), indent=2)
        )
        logger.debug("Persisted record %d to %s", record.index, self.session_dir)
        return stored

    def write_summary(self, session: Session) -> Path | None:
        if self.session_dir is None:
            return None
        summary = {
            "session_id": session.session_id,
            "prompt": session.prompt,
            "state": session.state.value,
            "status": session.status,
            "total_records": len(self._records),
            "significant_indices": [r.index for r in self.list_significant()],
            "diagnostic_log": session.diagnostic_log,
        }
        path = self.session_dir / "summary.json"
        path.write_text(json.dumps(summary, indent=2))
        return path
