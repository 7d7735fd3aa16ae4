"""HTTP tests for metered job submission, job views and quota administration."""

from __future__ import annotations

import os
from pathlib import Path
import tempfile
import time
import unittest

from fastapi.testclient import TestClient

from lectern.core.config import get_settings
from lectern.main import create_app

ADMIN = {"X-Admin-Secret": "test-admin-secret"}


def _bearer(account_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer test:{account_id}"}


class _SettingsEnvCase(unittest.TestCase):
    _env_defaults = {
        "LECTERN_AUTH_PROVIDER": "mock",
        "LECTERN_JOB_PROVIDER": "mock",
        "LECTERN_ADMIN_SECRET": "test-admin-secret",
        "LECTERN_POLL_INTERVAL_SECONDS": "0",
        "LECTERN_MOCK_POLLS_UNTIL_COMPLETE": "2",
        "LECTERN_AUTO_PROVISION_ACCOUNTS": "false",
        "LECTERN_FREE_TIER_UNITS": "5",
        "LECTERN_FFMPEG_BINARY": "ffmpeg",
        "LECTERN_DATABASE_URL": "",
    }

    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.upload_dir = Path(self._tmp.name) / "uploads"
        keys = [*self._env_defaults, "LECTERN_UPLOAD_DIR"]
        self._old_env = {k: os.environ.get(k) for k in keys}
        os.environ.update(self._env_defaults)
        os.environ["LECTERN_UPLOAD_DIR"] = str(self.upload_dir)
        get_settings.cache_clear()

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()

    def _client(self, **env: str) -> TestClient:
        for key, value in env.items():
            os.environ[f"LECTERN_{key.upper()}"] = value
        get_settings.cache_clear()
        client = TestClient(create_app())
        client.__enter__()
        self.addCleanup(client.__exit__, None, None, None)
        return client

    def _open_account(self, client: TestClient, account_id: str, units: int, *, unlimited: bool = False) -> None:
        response = client.post(
            "/api/v1/internal/accounts",
            headers=ADMIN,
            json={"account_id": account_id, "remaining_units": units, "unlimited": unlimited},
        )
        self.assertEqual(response.status_code, 201)

    def _wait_for_cleanup(self, client: TestClient, account_id: str, job_id: str) -> dict:
        for _ in range(300):
            body = client.get(f"/api/v1/jobs/{job_id}", headers=_bearer(account_id)).json()
            if body["state"] == "CLEANED_UP":
                return body
            time.sleep(0.01)
        self.fail(f"job {job_id} never resolved")

    def _staged_files(self) -> list[Path]:
        if not self.upload_dir.exists():
            return []
        return [path for path in self.upload_dir.rglob("*") if path.is_file()]


class TranscriptionApiTests(_SettingsEnvCase):
    def test_waited_transcription_returns_result_and_charges_one_unit(self) -> None:
        client = self._client()
        self._open_account(client, "acct-a", 2)

        response = client.post(
            "/api/v1/transcriptions",
            headers=_bearer("acct-a"),
            files={"audio": ("Lecture 1.mp3", b"ID3-audio", "audio/mpeg")},
            data={"language": "en"},
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["job"]["kind"], "transcription")
        self.assertEqual(body["job"]["outcome"], "COMPLETED")
        self.assertEqual(body["job"]["state"], "CLEANED_UP")
        self.assertTrue(body["job"]["result"].startswith("[mock transcript] "))
        self.assertTrue(body["job"]["result"].endswith("Lecture_1.mp3"))
        self.assertEqual(body["quota"]["remaining_units"], 1)
        self.assertEqual(body["quota"]["reserved_units"], 0)
        self.assertEqual(self._staged_files(), [])

    def test_exhausted_account_is_denied_before_anything_is_staged(self) -> None:
        client = self._client()
        self._open_account(client, "acct-empty", 0)

        response = client.post(
            "/api/v1/transcriptions",
            headers=_bearer("acct-empty"),
            files={"audio": ("a.mp3", b"ID3", "audio/mpeg")},
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "no_remaining_units")
        self.assertEqual(client.get("/api/v1/jobs", headers=_bearer("acct-empty")).json(), [])
        self.assertEqual(self._staged_files(), [])

    def test_unknown_account_is_denied_with_404(self) -> None:
        client = self._client()

        response = client.post(
            "/api/v1/transcriptions",
            headers=_bearer("acct-ghost"),
            files={"audio": ("a.mp3", b"ID3", "audio/mpeg")},
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "account_not_found")

    def test_unlimited_account_keeps_its_balance(self) -> None:
        client = self._client()
        self._open_account(client, "acct-pro", 0, unlimited=True)

        response = client.post(
            "/api/v1/transcriptions",
            headers=_bearer("acct-pro"),
            files={"audio": ("a.mp3", b"ID3", "audio/mpeg")},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["quota"], {
            "remaining_units": 0,
            "reserved_units": 0,
            "available_units": 0,
            "unlimited": True,
        })

    def test_video_extraction_failure_fails_job_and_releases_everything(self) -> None:
        client = self._client(ffmpeg_binary=str(Path(self._tmp.name) / "no-such-ffmpeg"))
        self._open_account(client, "acct-a", 1)

        response = client.post(
            "/api/v1/transcriptions/video",
            headers=_bearer("acct-a"),
            files={"video": ("talk.mp4", b"not-really-video", "video/mp4")},
        )

        self.assertEqual(response.status_code, 502)
        body = response.json()
        self.assertEqual(body["code"], "job_submission_failed")
        self.assertEqual(body["details"]["outcome"], "FAILED")
        self.assertEqual(self._staged_files(), [])
        quota = client.get("/api/v1/quota", headers=_bearer("acct-a")).json()
        self.assertEqual(quota["remaining_units"], 1)
        self.assertEqual(quota["reserved_units"], 0)

    def test_missing_upload_is_a_validation_error(self) -> None:
        client = self._client()

        response = client.post("/api/v1/transcriptions", headers=_bearer("acct-a"))

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")


class SummaryApiTests(_SettingsEnvCase):
    def test_unwaited_summary_is_accepted_then_completes(self) -> None:
        client = self._client()
        self._open_account(client, "acct-a", 3)

        response = client.post(
            "/api/v1/summaries",
            headers=_bearer("acct-a"),
            json={"text": "Cells divide. Then they grow.", "wait": False},
        )

        self.assertEqual(response.status_code, 202)
        job_id = response.json()["job"]["id"]
        self.assertIsNone(response.json()["job"]["outcome"])

        job = self._wait_for_cleanup(client, "acct-a", job_id)
        self.assertEqual(job["outcome"], "COMPLETED")
        self.assertEqual(job["result"], "[mock summary:en] Cells divide")
        self.assertEqual(client.get("/api/v1/quota", headers=_bearer("acct-a")).json()["remaining_units"], 2)

    def test_cancelled_summary_does_not_consume_a_unit(self) -> None:
        client = self._client(poll_interval_seconds="30")
        self._open_account(client, "acct-a", 1)
        created = client.post(
            "/api/v1/summaries",
            headers=_bearer("acct-a"),
            json={"text": "Long lecture.", "wait": False},
        ).json()
        job_id = created["job"]["id"]

        cancelled = client.post(f"/api/v1/jobs/{job_id}/cancel", headers=_bearer("acct-a"))
        job = self._wait_for_cleanup(client, "acct-a", job_id)
        again = client.post(f"/api/v1/jobs/{job_id}/cancel", headers=_bearer("acct-a"))

        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(job["outcome"], "CANCELLED")
        self.assertEqual(job["failure_code"], "job_cancelled")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "fsm_terminal_immutable")
        self.assertEqual(client.get("/api/v1/quota", headers=_bearer("acct-a")).json()["remaining_units"], 1)

    def test_empty_summary_text_is_rejected(self) -> None:
        client = self._client()

        response = client.post("/api/v1/summaries", headers=_bearer("acct-a"), json={"text": ""})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")


class JobVisibilityApiTests(_SettingsEnvCase):
    def test_other_accounts_get_no_leak_404(self) -> None:
        client = self._client()
        self._open_account(client, "acct-a", 1)
        job_id = client.post(
            "/api/v1/summaries",
            headers=_bearer("acct-a"),
            json={"text": "Notes."},
        ).json()["job"]["id"]

        foreign = client.get(f"/api/v1/jobs/{job_id}", headers=_bearer("acct-b"))
        foreign_cancel = client.post(f"/api/v1/jobs/{job_id}/cancel", headers=_bearer("acct-b"))
        listed = client.get("/api/v1/jobs", headers=_bearer("acct-a")).json()

        self.assertEqual(foreign.status_code, 404)
        self.assertEqual(foreign.json(), {"code": "resource_not_found", "message": "Resource not found"})
        self.assertEqual(foreign_cancel.status_code, 404)
        self.assertEqual([job["id"] for job in listed], [job_id])


class QuotaApiTests(_SettingsEnvCase):
    def test_auto_provisioned_account_gets_free_tier(self) -> None:
        client = self._client(auto_provision_accounts="true", free_tier_units="5")

        response = client.get("/api/v1/quota", headers=_bearer("acct-new"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["remaining_units"], 5)
        self.assertFalse(response.json()["unlimited"])

    def test_quota_for_unknown_account_is_404(self) -> None:
        client = self._client()

        response = client.get("/api/v1/quota", headers=_bearer("acct-ghost"))

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "account_not_found")

    def test_admin_endpoints_require_secret(self) -> None:
        client = self._client()

        missing = client.post("/api/v1/internal/accounts", json={"account_id": "acct-a"})
        wrong = client.post(
            "/api/v1/internal/accounts",
            headers={"X-Admin-Secret": "nope"},
            json={"account_id": "acct-a"},
        )

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.json()["code"], "unauthorized")
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(client.get("/api/v1/quota", headers=_bearer("acct-a")).status_code, 404)

    def test_upgrade_and_grant_units(self) -> None:
        client = self._client()
        self._open_account(client, "acct-a", 0)

        upgraded = client.post(
            "/api/v1/internal/accounts/acct-a/quota",
            headers=ADMIN,
            json={"unlimited": True},
        )
        granted = client.post(
            "/api/v1/internal/accounts/acct-a/quota",
            headers=ADMIN,
            json={"unlimited": False, "grant_units": 10},
        )

        self.assertTrue(upgraded.json()["unlimited"])
        self.assertFalse(granted.json()["unlimited"])
        self.assertEqual(granted.json()["remaining_units"], 10)

    def test_admin_errors(self) -> None:
        client = self._client()
        self._open_account(client, "acct-a", 1)

        duplicate = client.post("/api/v1/internal/accounts", headers=ADMIN, json={"account_id": "acct-a"})
        missing = client.post("/api/v1/internal/accounts/acct-ghost/quota", headers=ADMIN, json={"grant_units": 1})

        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["code"], "account_exists")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "account_not_found")


if __name__ == "__main__":
    unittest.main()
