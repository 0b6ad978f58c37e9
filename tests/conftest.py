"""
Pytest configuration and fixtures for escrow orchestrator tests.

This conftest.py provides shared fixtures for all tests.
"""
import pytest

from tests.helpers import PROGRAM_ID, FakeLedger, ManualClock


@pytest.fixture
def ledger():
    """Empty in-memory ledger"""
    return FakeLedger()


@pytest.fixture
def clock():
    """Manual monotonic clock; pass clock.sleep wherever a sleep is injected"""
    return ManualClock()


@pytest.fixture
def program_id():
    return PROGRAM_ID


@pytest.fixture
def metrics():
    """
    Metrics recorder on its own registry with the HTTP exporter disabled.

    Each recorder owns a fresh CollectorRegistry, so tests never share counters.
    """
    from infra.metrics import MetricsRecorder
    return MetricsRecorder(enabled=True, port=0)


@pytest.fixture
def records(tmp_path):
    """Record store backed by a temp file"""
    from infra.record_store import RecordStore
    return RecordStore(tmp_path / "records.json")


@pytest.fixture
def audit(tmp_path):
    from core.audit_log import AuditLogger
    return AuditLogger(audit_file=str(tmp_path / "audit.jsonl"))
