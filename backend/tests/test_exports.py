"""
Unique-code CSV exports and the cleanup of abandoned export files.
"""

import csv
from datetime import datetime, timedelta

import pytest

from coordination import PendingAction, PendingOperationTracker
from core.config import get_settings
from core.errors import TransientTransportError
from promotion import Status
from workers.exports import export_path, register_export_cleanup, run_unique_code_export

STORE_CODE = "flex-us"


@pytest.fixture
def csv_root(monkeypatch, tmp_path):
    root = tmp_path / "exports"
    monkeypatch.setattr(get_settings(), "csv_root", str(root))
    return root


@pytest.mark.asyncio
class TestUniqueCodeExport:
    async def test_writes_csv_and_releases_pending(self, sessions, make_entity, fake_billing, pending, csv_root):
        await make_entity("BULK", status=Status.STG_VALID)
        fake_billing.unique_codes = [
            {"code": "BULK-0001", "state": "active", "bulk_coupon_code": "BULK", "created_at": "2024-03-01"},
            {"code": "BULK-0002", "state": "redeemed", "bulk_coupon_code": "BULK", "redeemed_at": "2024-03-04",
             "id": 991},
        ]
        await pending.start("BULK", PendingAction.EXPORT_CSV)

        result = await run_unique_code_export(
            sessions, fake_billing, pending, store_code=STORE_CODE, code="BULK", env="stg"
        )

        assert result["status"] == "success"
        assert result["count"] == 2
        with open(export_path(STORE_CODE, "BULK", "stg"), newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["code"] for r in rows] == ["BULK-0001", "BULK-0002"]
        assert rows[1]["redeemed_at"] == "2024-03-04"
        assert "id" not in rows[0]
        assert ("list_unique_codes", "stg", "BULK") in fake_billing.calls
        assert await pending.check("BULK") is None

    async def test_failure_removes_partial_file(self, sessions, make_entity, fake_billing, pending, csv_root):
        await make_entity("BULK", status=Status.PROD_VALID)
        path = export_path(STORE_CODE, "BULK", "prod")
        path.parent.mkdir(parents=True)
        path.write_text("stale")
        fake_billing.failures["list_unique_codes"] = TransientTransportError("billing unreachable")
        await pending.start("BULK", PendingAction.EXPORT_CSV)

        with pytest.raises(TransientTransportError):
            await run_unique_code_export(
                sessions, fake_billing, pending, store_code=STORE_CODE, code="BULK", env="prod"
            )

        assert not path.exists()
        assert await pending.check("BULK") is None


@pytest.mark.asyncio
class TestExportCleanup:
    async def test_expired_export_removes_its_files(self, sessions, retry_policy, csv_root):
        now = [datetime(2024, 3, 1, 12, 0)]
        tracker = register_export_cleanup(
            PendingOperationTracker(sessions, retry_policy=retry_policy, clock=lambda: now[0])
        )
        csv_root.mkdir()
        abandoned = csv_root / "flex-us_BULK_stg.csv"
        abandoned.write_text("code\nBULK-0001\n")
        other = csv_root / "flex-us_OTHER_stg.csv"
        other.write_text("code\n")

        await tracker.start("BULK", PendingAction.EXPORT_CSV)
        now[0] += timedelta(minutes=16)

        assert await tracker.check("BULK") is None
        assert not abandoned.exists()
        assert other.exists()

    async def test_expired_export_spares_codes_sharing_a_prefix(self, sessions, retry_policy, csv_root):
        now = [datetime(2024, 3, 1, 12, 0)]
        tracker = register_export_cleanup(
            PendingOperationTracker(sessions, retry_policy=retry_policy, clock=lambda: now[0])
        )
        csv_root.mkdir()
        abandoned = csv_root / "flex-us_A_prod.csv"
        abandoned.write_text("code\n")
        sibling = csv_root / "flex-us_A_B_stg.csv"
        sibling.write_text("code\nA_B-0001\n")

        await tracker.start("A", PendingAction.EXPORT_CSV)
        now[0] += timedelta(minutes=16)

        assert await tracker.check("A") is None
        assert not abandoned.exists()
        assert sibling.exists()
