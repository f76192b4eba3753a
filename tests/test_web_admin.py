import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from calnotes.models import SyncResult
from calnotes.web_admin import AppContext, create_app

PRIVATE_URL = "https://calendar.example.com/private.ics?token=s3cret"


class WebAdminTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.context = AppContext(config_path=str(root / "config.yaml"), state_path=str(root / "state.db"))
        self.client = TestClient(create_app(self.context, start_scheduler=False))

        seed_payload = {
            "sync": {"vault_path": str(root / "vault"), "interval_seconds": 300},
            "sources": [{"url": PRIVATE_URL, "folder": "Meetings"}],
        }
        resp = self.client.put("/api/config", json={"payload": seed_payload})
        self.assertEqual(resp.status_code, 200)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_masks_feed_tokens(self) -> None:
        resp = self.client.get("/api/config")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data["sources"][0]["url"], "https://calendar.example.com/private.ics?***")
        self.assertEqual(data["identity_keys"]["event_id"], "externalEventId")

    def test_put_config_with_masked_url_keeps_token(self) -> None:
        config = self.client.get("/api/config").json()
        config["sources"][0]["tag"] = "work"
        resp = self.client.put("/api/config", json={"payload": {"sources": config["sources"]}})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["sources"], 1)
        stored = self.context.config_manager.load().sources[0]
        self.assertEqual(stored.url, PRIVATE_URL)
        self.assertEqual(stored.tag, "work")

    def test_put_config_non_source_fields_merge(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": 600}}})
        self.assertEqual(resp.status_code, 200)
        config = resp.json()["config"]
        self.assertEqual(config["sync"]["interval_seconds"], 600)
        self.assertTrue(config["sync"]["vault_path"].endswith("vault"))
        self.assertEqual(len(config["sources"]), 1)

    def test_put_config_rejects_invalid_values(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"sync": {"interval_seconds": "often"}}})
        self.assertEqual(resp.status_code, 400)

    def test_sync_run_triggers_scheduler(self) -> None:
        with mock.patch.object(self.context.scheduler, "trigger_manual") as trigger_manual:
            resp = self.client.post("/api/sync/run")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"message": "sync triggered"})
        trigger_manual.assert_called_once()

    def test_forced_sync_runs_inline(self) -> None:
        fake_result = SyncResult(
            status="success",
            message="1 created, 0 updated, 0 archived/deleted run_id=1",
            duration_ms=42,
            changes_applied=1,
            trigger="manual-force",
            run_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        )
        with mock.patch.object(self.context.sync_engine, "run_once", return_value=fake_result) as run_once:
            resp = self.client.post("/api/sync/run", json={"force": True})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["status"], "success")
        run_once.assert_called_once_with(trigger="manual-force", force=True)

    def test_sync_status_lists_runs(self) -> None:
        self.context.state_store.record_sync_run(
            trigger="scheduled", status="success", message="ok", duration_ms=3, changes_applied=0
        )
        resp = self.client.get("/api/sync/status?limit=5")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertFalse(data["running"])
        self.assertEqual(data["runs"][0]["trigger"], "scheduled")

    def test_audit_events_endpoints(self) -> None:
        state_store = self.context.state_store
        state_store.record_audit_event(
            run_id=3, path="Meetings/A.md", event_id="a", action="created", details={"title": "A"}
        )
        state_store.record_audit_event(run_id=3, path="Meetings/B.md", event_id="b", action="quarantined", details={})

        resp = self.client.get("/api/audit/events?action=quarantined")
        self.assertEqual(resp.status_code, 200)
        events = resp.json()["events"]
        self.assertEqual([event["path"] for event in events], ["Meetings/B.md"])

        detail = self.client.get(f"/api/audit/events/{events[0]['id']}")
        self.assertEqual(detail.status_code, 200)
        self.assertEqual(detail.json()["action"], "quarantined")
        self.assertEqual(self.client.get("/api/audit/events/999").status_code, 404)

    def test_orphans_lists_quarantined_notes(self) -> None:
        vault = Path(self.temp_dir.name) / "vault" / "Meetings"
        vault.mkdir(parents=True)
        (vault / "Standup.md").write_text(
            "---\n"
            "externalEventId: standup-1\n"
            "calendarOrphanCandidateAt: '2024-03-01T12:00:00+00:00'\n"
            "calendarOrphanMissCount: 2\n"
            "calendarOrphanReason: missing-from-source\n"
            "---\n",
            encoding="utf-8",
        )
        (vault / "Other.md").write_text("---\nexternalEventId: other\n---\n", encoding="utf-8")

        resp = self.client.get("/api/orphans")

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(
            data["candidates"],
            [
                {
                    "path": "Meetings/Standup.md",
                    "event_id": "standup-1",
                    "candidate_at": "2024-03-01T12:00:00+00:00",
                    "miss_count": 2,
                    "reason": "missing-from-source",
                }
            ],
        )
        self.assertEqual(data["tracker"], {"miss_counts": {}, "tombstones": {}})


if __name__ == "__main__":
    unittest.main()
