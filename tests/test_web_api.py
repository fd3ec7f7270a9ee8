import os
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from familycal.web_api import create_app


class WebApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        env = {
            "FAMILYCAL_CONFIG_PATH": str(Path(self.temp_dir.name) / "config.yaml"),
            "FAMILYCAL_STATE_PATH": str(Path(self.temp_dir.name) / "state.db"),
        }
        self._saved_env = {key: os.environ.get(key) for key in env}
        os.environ.update(env)
        self.client = TestClient(create_app())

        family = self.client.post("/api/families", json={"name": "Dahl"}).json()
        self.family_id = family["id"]
        self.parent = self.client.post(
            f"/api/families/{self.family_id}/members", json={"name": "Ida", "role": "PARENT"}
        ).json()
        self.child = self.client.post(
            f"/api/families/{self.family_id}/members", json={"name": "Emil", "role": "CHILD"}
        ).json()

    def tearDown(self) -> None:
        for key, value in self._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        self.temp_dir.cleanup()

    def _headers(self, member) -> dict[str, str]:
        return {"X-Member-Id": member["id"]}

    def _create_series(self, **fields):
        payload = {
            "title": "Swim practice",
            "start": "2024-01-01T16:00:00",
            "end": "2024-01-01T17:00:00",
            "recurrence": {"frequency": "WEEKLY"},
        }
        payload.update(fields)
        resp = self.client.post("/api/events", json=payload, headers=self._headers(self.parent))
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def _occurrences(self, start="2024-01-01", end="2024-01-31"):
        resp = self.client.get(
            f"/api/families/{self.family_id}/occurrences",
            params={"start": start, "end": end},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()["occurrences"]

    def test_healthz(self) -> None:
        resp = self.client.get("/healthz")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_config_roundtrip(self) -> None:
        resp = self.client.put("/api/config", json={"payload": {"calendar": {"default_window_days": 30}}})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["config"]["calendar"]["default_window_days"], 30)
        self.assertEqual(self.client.get("/api/config").json()["calendar"]["default_window_days"], 30)
        unknown = self.client.put("/api/config", json={"payload": {"scheduler": {"interval_seconds": 5}}})
        self.assertEqual(unknown.status_code, 400)

    def test_members_listing(self) -> None:
        resp = self.client.get(f"/api/families/{self.family_id}/members")
        self.assertEqual([member["name"] for member in resp.json()["members"]], ["Ida", "Emil"])
        self.assertEqual(self.client.get("/api/families/missing/members").status_code, 404)

    def test_delete_single_occurrence(self) -> None:
        series = self._create_series()
        resp = self.client.delete(
            f"/api/events/{series['id']}",
            params={"occurrence_date": "2024-01-15", "scope": "THIS"},
            headers=self._headers(self.parent),
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        days = [item["occurrence_date"] for item in self._occurrences()]
        self.assertEqual(days, ["2024-01-01", "2024-01-08", "2024-01-22", "2024-01-29"])

    def test_edit_this_and_following(self) -> None:
        series = self._create_series()
        resp = self.client.patch(
            f"/api/events/{series['id']}",
            json={"occurrence_date": "2024-01-15", "scope": "THIS_AND_FOLLOWING", "changes": {"title": "New"}},
            headers=self._headers(self.parent),
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        successor = resp.json()["event"]
        self.assertEqual(successor["start"], "2024-01-15T16:00:00")

        original = self.client.get(f"/api/events/{series['id']}").json()
        self.assertEqual(original["recurrence"]["end_date"], "2024-01-14")
        titles = [item["title"] for item in self._occurrences()]
        self.assertEqual(titles, ["Swim practice", "Swim practice", "New", "New", "New"])

    def test_error_statuses(self) -> None:
        series = self._create_series()
        invalid_scope = self.client.delete(
            f"/api/events/{series['id']}",
            params={"occurrence_date": "2024-01-15", "scope": "SOMETIMES"},
            headers=self._headers(self.parent),
        )
        self.assertEqual(invalid_scope.status_code, 400)

        before_start = self.client.delete(
            f"/api/events/{series['id']}",
            params={"occurrence_date": "2023-12-01", "scope": "THIS_AND_FOLLOWING"},
            headers=self._headers(self.parent),
        )
        self.assertEqual(before_start.status_code, 400)

        child_edit = self.client.patch(
            f"/api/events/{series['id']}",
            json={"scope": "ALL", "changes": {"title": "Mine"}},
            headers=self._headers(self.child),
        )
        self.assertEqual(child_edit.status_code, 403)

        missing = self.client.get("/api/events/does-not-exist")
        self.assertEqual(missing.status_code, 404)

        anonymous = self.client.post("/api/events", json={"title": "Nope", "start": "2024-01-01T10:00:00"})
        self.assertEqual(anonymous.status_code, 400)

        bad_window = self.client.get(
            f"/api/families/{self.family_id}/occurrences", params={"start": "2024-02-01", "end": "2024-01-01"}
        )
        self.assertEqual(bad_window.status_code, 400)

    def test_cross_family_access_forbidden(self) -> None:
        series = self._create_series()
        other = self.client.post("/api/families", json={"name": "Berg"}).json()
        outsider = self.client.post(f"/api/families/{other['id']}/members", json={"name": "Jon", "role": "PARENT"}).json()

        resp = self.client.delete(
            f"/api/events/{series['id']}",
            params={"scope": "ALL"},
            headers=self._headers(outsider),
        )
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(len(self._occurrences()), 5)

    def test_completion_toggle(self) -> None:
        chore = self._create_series(
            title="Feed the cat",
            is_task=True,
            xp_points=3,
            participant_ids=[self.child["id"]],
            recurrence={"frequency": "DAILY"},
        )
        resp = self.client.put(
            f"/api/events/{chore['id']}/completion",
            json={"occurrence_date": "2024-01-02", "completed": True},
            headers=self._headers(self.child),
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertTrue(resp.json()["completed"])

        listing = self._occurrences(start="2024-01-02", end="2024-01-02")
        self.assertEqual([item["completed"] for item in listing if item["event_id"] == chore["id"]], [True])

        completions = self.client.get(f"/api/events/{chore['id']}/completions").json()["completions"]
        self.assertEqual([record["member_id"] for record in completions], [self.child["id"]])
        by_member = self.client.get(f"/api/members/{self.child['id']}/completions").json()["completions"]
        self.assertEqual(len(by_member), 1)

        anonymous = self.client.put(
            f"/api/events/{chore['id']}/completion",
            json={"occurrence_date": "2024-01-03", "completed": True},
        )
        self.assertEqual(anonymous.status_code, 400)

    def test_categories(self) -> None:
        headers = self._headers(self.parent)
        created = self.client.post(
            f"/api/families/{self.family_id}/categories", json={"name": "School"}, headers=headers
        )
        self.assertEqual(created.status_code, 200, created.text)
        category = created.json()
        self.assertEqual(category["color"], "#b8e6b8")

        duplicate = self.client.post(
            f"/api/families/{self.family_id}/categories", json={"name": "School"}, headers=headers
        )
        self.assertEqual(duplicate.status_code, 400)

        updated = self.client.patch(f"/api/categories/{category['id']}", json={"color": "#123456"}, headers=headers)
        self.assertEqual(updated.json()["color"], "#123456")

        listed = self.client.get(f"/api/families/{self.family_id}/categories").json()["categories"]
        self.assertEqual([item["name"] for item in listed], ["School"])

        deleted = self.client.delete(f"/api/categories/{category['id']}", headers=headers)
        self.assertEqual(deleted.status_code, 200)

    def test_audit_events_recorded(self) -> None:
        self._create_series()
        events = self.client.get("/api/audit/events", params={"family_id": self.family_id}).json()["events"]
        self.assertEqual(events[0]["action"], "create_event")


if __name__ == "__main__":
    unittest.main()
