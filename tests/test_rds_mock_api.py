import unittest

from fastapi.testclient import TestClient

from recovery_orchestrator.mock_systems import rds_api
from recovery_orchestrator.mock_systems.rds_api import RdsStore, app


class RdsMockApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._original_store = rds_api.store
        rds_api.store = RdsStore(ready_after_polls=2)
        self.client = TestClient(app)
        response = self.client.post(
            "/instances",
            json={"instance_id": "rm-src-001", "instance_name": "orders-db"},
        )
        self.assertEqual(response.status_code, 201)

    def tearDown(self) -> None:
        rds_api.store = self._original_store

    def _clone(self) -> str:
        response = self.client.post(
            "/instances/rm-src-001/clone",
            json={
                "region": "cn-shenzhen",
                "target_instance_name": "orders-db-drill",
                "instance_class": "mysql.n1.micro.1",
                "storage_size": 20,
                "restore_type": "BackupSet",
                "backup_id": None,
            },
        )
        self.assertEqual(response.status_code, 200)
        return response.json()["provider_task_id"]

    def test_clone_becomes_running_after_polls(self) -> None:
        clone_id = self._clone()

        first = self.client.get(f"/instances/{clone_id}").json()
        second = self.client.get(f"/instances/{clone_id}").json()

        self.assertEqual(first["status"], "Creating")
        self.assertEqual(second["status"], "Running")
        self.assertEqual(second["instance_name"], "orders-db-drill")

    def test_validate_reports_failing_checks(self) -> None:
        clone_id = self._clone()

        passed = self.client.post(f"/instances/{clone_id}/validate", json={"rules": {}}).json()
        failed = self.client.post(
            f"/instances/{clone_id}/validate",
            json={"rules": {"fail_checks": ["data_consistency"]}},
        ).json()

        self.assertTrue(passed["success"])
        self.assertFalse(failed["success"])
        self.assertFalse(failed["details"]["data_consistency"]["passed"])
        self.assertTrue(failed["details"]["data_integrity"]["passed"])

    def test_unknown_instances_return_404(self) -> None:
        self.assertEqual(self.client.get("/instances/rm-missing").status_code, 404)
        response = self.client.post(
            "/instances/rm-missing/clone",
            json={
                "region": "cn-shenzhen",
                "target_instance_name": "x",
                "instance_class": "mysql.n1.micro.1",
                "storage_size": 20,
                "restore_type": "BackupSet",
            },
        )
        self.assertEqual(response.status_code, 404)

    def test_point_in_time_clone_requires_restore_time(self) -> None:
        response = self.client.post(
            "/instances/rm-src-001/clone",
            json={
                "region": "cn-shenzhen",
                "target_instance_name": "orders-db-pitr",
                "instance_class": "mysql.n1.micro.1",
                "storage_size": 20,
                "restore_type": "PointInTime",
            },
        )
        self.assertEqual(response.status_code, 400)

    def test_delete_removes_clone(self) -> None:
        clone_id = self._clone()

        self.assertEqual(self.client.delete(f"/instances/{clone_id}").status_code, 200)
        self.assertEqual(self.client.get(f"/instances/{clone_id}").status_code, 404)
