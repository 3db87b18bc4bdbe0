import os
import sys
import csv
import io
import shutil
import tempfile
import unittest
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from rest_api import TrackerAPI
from settings_schema import TrackerSettings


class APITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        settings = TrackerSettings(
            db_path=os.path.join(self.tmpdir, "tracker.db"),
            backup_dir=os.path.join(self.tmpdir, "backups"),
            seed_defaults=False,
        )
        self.api = TrackerAPI(settings, start_scheduler=False)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_full_workflow(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.get("/health")
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json()["status"], "ok")
            self.assertEqual(response.json()["database"]["exercises"], 0)

            response = client.post("/tags", json={"name": "Legs"})
            self.assertEqual(response.json(), {"id": 1})

            response = client.post("/exercises", json={"name": "Squat", "tag_ids": [1]})
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.json(), {"id": 1})

            response = client.get("/exercises/1")
            self.assertEqual(response.status_code, 200)
            body = response.json()
            self.assertEqual(body["name"], "Squat")
            self.assertEqual([t["name"] for t in body["tags"]], ["Legs"])

            response = client.put("/exercises/1", json={"default_weight": 100})
            self.assertEqual(response.json()["default_weight"], 100)

            response = client.post("/exercises/1/favorite")
            self.assertEqual(response.json(), {"id": 1, "is_favorite": True})

            response = client.post("/sessions", json={"date": "2024-01-01", "time_of_day": "morning"})
            self.assertEqual(response.json(), {"id": 1})
            response = client.post("/sessions", json={"date": "2024-01-01", "time_of_day": "morning"})
            self.assertEqual(response.json(), {"id": 1})

            response = client.post(
                "/sessions/1/sets", json={"exercise_id": 1, "weight": 100, "reps": 5}
            )
            self.assertEqual(response.json(), {"id": 1})
            response = client.post(
                "/sessions/1/sets/bulk",
                json=[
                    {"exercise_id": 1, "weight": 105, "reps": 5},
                    {"exercise_id": 1, "weight": 110, "reps": 3, "is_failure": True},
                ],
            )
            self.assertEqual(response.json(), {"ids": [2, 3]})

            response = client.get("/sessions/1/sets")
            self.assertEqual([s["set_order"] for s in response.json()], [1, 2, 3])

            response = client.put("/sets/2", json={"reps": 6})
            self.assertEqual(response.json(), {"status": "updated"})
            response = client.delete("/sets/3")
            self.assertEqual(response.json(), {"status": "deleted"})

            response = client.get("/sessions/1")
            body = response.json()
            self.assertEqual(body["set_count"], 2)
            self.assertEqual(body["exercise_names"], ["Squat"])
            self.assertEqual(body["total_volume"], 100 * 5 + 105 * 6)

            response = client.put("/sessions/1/duration", params={"minutes": 50})
            self.assertEqual(response.json(), {"status": "updated"})

            response = client.get("/sessions/range", params={"start": "2024-01-01", "end": "2024-01-31"})
            self.assertEqual([s["id"] for s in response.json()], [1])
            response = client.get("/sessions/date/2024-01-01")
            self.assertEqual(response.json()[0]["duration_minutes"], 50)
            response = client.get("/sessions", params={"page": 0, "page_size": 10})
            self.assertEqual(response.json()["total_items"], 1)

            response = client.get("/calendar/2024/1")
            self.assertEqual(response.json(), {"dates": ["2024-01-01"]})

            response = client.get("/exercises/recent")
            recent = response.json()
            self.assertEqual(recent[0]["exercise_name"], "Squat")
            self.assertEqual(recent[0]["use_count"], 3)

            response = client.get("/exercises/1/sets", params={"limit": 1})
            self.assertEqual(len(response.json()), 1)

            response = client.get("/stats/workouts", params={"start": "2024-01-01", "end": "2024-01-31"})
            stats = response.json()
            self.assertEqual(stats["total_sessions"], 1)
            self.assertEqual(stats["total_sets"], 2)
            self.assertEqual(stats["total_duration"], 50)

            response = client.get("/stats/frequency", params={"start": "2024-01-01", "end": "2024-01-31"})
            self.assertEqual(response.json(), [{"day_of_week": 1, "count": 1}])

            response = client.get("/stats/has_workout", params={"date": "2024-01-01"})
            self.assertEqual(response.json(), {"date": "2024-01-01", "has_workout": True})

            response = client.get("/export/sets.csv")
            self.assertEqual(response.status_code, 200)
            self.assertTrue(response.headers["content-type"].startswith("text/csv"))
            rows = list(csv.reader(io.StringIO(response.text)))
            self.assertEqual(len(rows), 3)

            response = client.get("/export/exercises.json")
            self.assertEqual(response.json()[0]["name"], "Squat")

            response = client.get("/tags/1/exercises")
            self.assertEqual([e["name"] for e in response.json()], ["Squat"])

            response = client.delete("/sessions/1")
            self.assertEqual(response.json(), {"status": "deleted"})
            response = client.get("/calendar/2024/1")
            self.assertEqual(response.json(), {"dates": []})

            response = client.delete("/exercises/1")
            self.assertEqual(response.json(), {"status": "deleted"})
            response = client.get("/exercises")
            self.assertEqual(response.json(), [])

    def test_error_responses(self) -> None:
        with TestClient(self.api.app) as client:
            client.post("/exercises", json={"name": "Squat"})

            response = client.post("/exercises", json={"name": "squat"})
            self.assertEqual(response.status_code, 409)
            self.assertEqual(response.json()["error"], "DUPLICATE_ERROR")

            response = client.get("/exercises/99")
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["error"], "NOT_FOUND")

            response = client.post("/exercises", json={"name": ""})
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"], "VALIDATION_ERROR")

            response = client.post("/sessions", json={"date": "2024-02-30"})
            self.assertEqual(response.status_code, 400)

            client.post("/sessions", json={"date": "2024-01-01"})
            response = client.post(
                "/sessions/1/sets", json={"exercise_id": 1, "weight": -5, "reps": 5}
            )
            self.assertEqual(response.status_code, 400)
            response = client.post(
                "/sessions/1/sets", json={"exercise_id": 42, "weight": 5, "reps": 5}
            )
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"], "CONSTRAINT_ERROR")

            client.post("/sessions/1/sets", json={"exercise_id": 1, "weight": 5, "reps": 5})
            response = client.delete("/exercises/1")
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"], "CONSTRAINT_ERROR")

            response = client.get("/calendar/2024/13")
            self.assertEqual(response.status_code, 400)

            response = client.get("/sessions/range", params={"start": "2024-02-01", "end": "2024-01-01"})
            self.assertEqual(response.status_code, 400)

            response = client.get("/sessions", params={"page": 0, "page_size": 0})
            self.assertEqual(response.status_code, 400)

            response = client.delete("/sets/99")
            self.assertEqual(response.status_code, 404)

            response = client.get("/profile")
            self.assertEqual(response.status_code, 404)

            response = client.post("/backups/restore", params={"path": os.path.join(self.tmpdir, "none.db")})
            self.assertEqual(response.status_code, 500)
            self.assertEqual(response.json()["error"], "FILE_ERROR")

    def test_backups_and_cache_admin(self) -> None:
        with TestClient(self.api.app) as client:
            client.post("/exercises", json={"name": "Squat"})
            response = client.post("/backups")
            path = response.json()["path"]
            self.assertTrue(os.path.exists(path))

            response = client.get("/backups")
            self.assertEqual([b["path"] for b in response.json()], [path])

            client.post("/exercises", json={"name": "Curl"})
            self.assertEqual(len(client.get("/exercises").json()), 2)
            self.assertGreater(client.get("/cache/stats").json()["size"], 0)

            response = client.post("/backups/restore", params={"path": path})
            self.assertEqual(response.json(), {"status": "restored"})
            self.assertEqual([e["name"] for e in client.get("/exercises").json()], ["Squat"])

            response = client.post("/cache/clear")
            self.assertEqual(response.json(), {"status": "cleared"})
            self.assertEqual(client.get("/cache/stats").json()["size"], 0)

    def test_database_reset_drops_cached_reads(self) -> None:
        with TestClient(self.api.app) as client:
            client.post("/exercises", json={"name": "Squat"})
            self.assertEqual(len(client.get("/exercises").json()), 1)

            response = client.post("/database/reset")
            self.assertEqual(response.json(), {"status": "reset"})
            self.assertEqual(client.get("/cache/stats").json()["size"], 0)
            self.assertEqual(client.get("/exercises").json(), [])


class SeededAPITestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp()
        settings = TrackerSettings(
            db_path=os.path.join(self.tmpdir, "tracker.db"),
            backup_dir=os.path.join(self.tmpdir, "backups"),
        )
        self.api = TrackerAPI(settings, start_scheduler=False)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_default_catalog(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.get("/exercises", params={"page": 0, "page_size": 5})
            body = response.json()
            self.assertEqual(body["total_items"], 8)
            self.assertEqual(len(body["items"]), 5)
            self.assertTrue(body["has_next"])

            response = client.get("/tags")
            self.assertEqual(len(response.json()), 9)

            response = client.get("/exercises", params={"search": "press"})
            self.assertEqual(
                [e["name"] for e in response.json()], ["Bench Press", "Overhead Press"]
            )

    def test_profile(self) -> None:
        with TestClient(self.api.app) as client:
            response = client.get("/profile")
            self.assertEqual(response.json()["name"], "User")
            response = client.put("/profile", json={"weight_unit": "lbs", "locale": "ko"})
            self.assertEqual(response.json()["weight_unit"], "lbs")
            self.assertEqual(client.get("/profile").json()["locale"], "ko")
            response = client.put("/profile", json={"weight_unit": "stone"})
            self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
