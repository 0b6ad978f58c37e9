"""
Escrow Orchestrator Core: Audit Logger

Structured trail of every intent submission and lifecycle transition.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Records:
    - Intents (built, submitted, confirmed, pending, failed)
    - Escrow and pool lifecycle transitions
    - Reconciler repairs

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def _write(self, entry: Dict[str, Any]) -> None:
        entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        try:
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            # Audit write failures never abort an intent
            logger.error(f"Failed to write audit log: {e}")

    def log_intent(self,
                   intent: str,
                   status: str,
                   signature: Optional[str] = None,
                   address: Optional[str] = None,
                   instructions: Optional[List[str]] = None,
                   error: Optional[str] = None,
                   details: Optional[Dict[str, Any]] = None) -> None:
        """
        Log one intent outcome.

        Args:
            intent: Intent name (list_asset, buy_asset, swap, ...)
            status: built | confirmed | pending | failed | repaired
            signature: Transaction signature if submitted
            address: Primary derived address (escrow, pool mint)
            instructions: Ordered instruction names
            error: Error text for failed/pending outcomes
        """
        entry = {
            "type": "intent",
            "intent": intent,
            "status": status,
            "signature": signature,
            "address": address,
            "instructions": instructions or [],
            "error": error,
            "details": details or {},
        }
        self._write(entry)
        logger.debug(f"Audited intent {intent}: status={status}")

    def log_transition(self,
                       machine: str,
                       key: str,
                       from_state: str,
                       to_state: str,
                       signature: Optional[str] = None,
                       address: Optional[str] = None) -> None:
        self._write({
            "type": "transition",
            "machine": machine,
            "key": key,
            "from": from_state,
            "to": to_state,
            "signature": signature,
            "address": address,
        })

    def get_recent(self, n: int = 10, entry_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent entries, optionally filtered by type.
        """
        if not self.audit_file.exists():
            return []

        entries = []
        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                for line in f:
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if entry_type is None or entry.get("type") == entry_type:
                        entries.append(entry)
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []
        return entries[-n:]
