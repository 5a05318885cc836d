"""HTTP tests for the deployer API using FastAPI's test client."""

import asyncio
from dataclasses import replace
from decimal import Decimal
import hashlib
import os
import tempfile
import unittest

from fastapi.testclient import TestClient

from deployer.core.config import load_settings
from deployer.main import DeployerServices, create_app
from deployer.models.deployments import DeploymentRecord
from deployer.models.enums import DeploymentStatus
from deployer.models.loans import LoanRequestedEvent
from deployer.repositories import DeploymentStateRepository, SqliteKeyValueStore
from deployer.services import BinaryManager, DeploymentOrchestrator, ExpirySweepScheduler, LoanEventMonitor
from deployer.tests.fakes import ELF_BINARY, FakeDeploymentAdapter, FakeIndexerClient, FakeProtocolClient, no_sleep


MAX_TEST_BINARY = 1024


class DeployerApiTests(unittest.TestCase):
    """Exercise every endpoint against in-memory collaborators."""

    def setUp(self) -> None:
        """Wire the app with fakes and start its lifecycle."""
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        root = self._tmp.name
        settings = replace(
            load_settings(),
            db_path=os.path.join(root, "state.db"),
            binary_storage_path=os.path.join(root, "binaries"),
            upload_path=os.path.join(root, "uploads"),
            monitor_enabled=False,
            sweep_enabled=False,
        )
        self.repository = DeploymentStateRepository(SqliteKeyValueStore(settings.db_path))
        self.adapter = FakeDeploymentAdapter(rent=Decimal("0.5"))
        self.protocol = FakeProtocolClient()
        self.indexer = FakeIndexerClient(
            [LoanRequestedEvent(loan_id="0", borrower="alice", principal=100, slot=3)]
        )
        queue: asyncio.Queue = asyncio.Queue(maxsize=10)
        orchestrator = DeploymentOrchestrator(
            repository=self.repository,
            adapter=self.adapter,
            protocol_client=self.protocol,
            queue=queue,
            confirmation_delay_sec=0.0,
            sleep=no_sleep,
            clock=lambda: 10_000.0,
        )
        services = DeployerServices(
            settings=settings,
            repository=self.repository,
            adapter=self.adapter,
            binary_manager=BinaryManager(
                settings.binary_storage_path, settings.upload_path, self.adapter, max_binary_bytes=MAX_TEST_BINARY
            ),
            protocol_client=self.protocol,
            monitor=LoanEventMonitor(self.indexer, self.repository, queue),
            orchestrator=orchestrator,
            scheduler=ExpirySweepScheduler(orchestrator, enabled=False),
        )
        self.client = TestClient(create_app(services=services))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def _upload(self, borrower: str = "alice", name: str = "program.so", data: bytes = ELF_BINARY):
        return self.client.post(
            "/upload",
            files={"file": (name, data, "application/octet-stream")},
            data={"borrower": borrower},
        )

    def test_upload_stores_binary_and_prices_it(self) -> None:
        """A valid upload returns its id, hash and estimated cost."""
        response = self._upload()
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(len(body["fileId"]), 16)
        self.assertEqual(body["binaryHash"], hashlib.sha256(ELF_BINARY).hexdigest())
        self.assertAlmostEqual(body["estimatedCost"], 0.5001)

        record = self.client.get("/uploads/{0}".format(body["fileId"]))
        self.assertEqual(record.status_code, 200)
        self.assertEqual(record.json()["borrower"], "alice")
        self.assertEqual(record.json()["status"], "ready")

    def test_upload_rejects_wrong_extension(self) -> None:
        """Only `.so` files are accepted."""
        response = self._upload(name="program.exe")
        self.assertEqual(response.status_code, 400)

    def test_upload_rejects_non_elf(self) -> None:
        """Validation reasons are reported to the caller."""
        response = self._upload(data=b"\x00\x00\x00\x00")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Invalid ELF header")

    def test_upload_rejects_oversized_binary(self) -> None:
        """Bodies past the size limit are refused without storing anything."""
        response = self._upload(data=ELF_BINARY + b"\x00" * (MAX_TEST_BINARY * 4))
        self.assertEqual(response.status_code, 400)
        self.assertTrue(response.json()["detail"].startswith("Binary too large"))
        self.assertEqual(os.listdir(os.path.join(self._tmp.name, "binaries")), [])

    def test_unknown_upload_is_404(self) -> None:
        """Missing uploads are reported as not found."""
        self.assertEqual(self.client.get("/uploads/doesnotexist").status_code, 404)

    def test_notify_loan_without_upload_is_404(self) -> None:
        """A borrower must upload before notifying."""
        response = self.client.post("/notify-loan", json={"signature": "sig", "borrower": "alice", "loanId": "0"})
        self.assertEqual(response.status_code, 404)

    def test_notify_loan_deploys_in_background(self) -> None:
        """An accepted notification ends with a deployed record."""
        self.protocol.add_loan("0", borrower="alice", principal=1234)
        self._upload()
        response = self.client.post("/notify-loan", json={"signature": "sig", "borrower": "alice", "loanId": "0"})
        self.assertEqual(response.status_code, 202)

        deployment = self.client.get("/deployments/0")
        self.assertEqual(deployment.status_code, 200)
        self.assertEqual(deployment.json()["status"], "deployed")
        self.assertEqual(deployment.json()["principal"], 1234)

        repeat = self.client.post("/notify-loan", json={"signature": "sig", "borrower": "alice", "loanId": "0"})
        self.assertEqual(repeat.status_code, 200)
        self.assertEqual(repeat.json()["status"], "deployed")

    def test_notify_repaid_transfers_authority(self) -> None:
        """Repayment notifications schedule the authority transfer."""
        asyncio.run(
            self.repository.save_deployment(
                DeploymentRecord(loan_id="5", borrower="bob", status=DeploymentStatus.DEPLOYED, program_id="Prog5")
            )
        )
        response = self.client.post("/notify-repaid", json={"signature": "sig", "borrower": "bob", "loanId": "5"})
        self.assertEqual(response.status_code, 202)
        self.assertEqual(
            self.protocol.calls_named("transfer_authority_to_borrower"),
            [("5", "bob", "Data-Prog5")],
        )

    def test_check_expired_loans_runs_sweep(self) -> None:
        """The manual trigger runs a sweep pass."""
        self.protocol.add_loan("9", borrower="carol", principal=50)
        response = self.client.post("/check-expired-loans")
        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.protocol.calls_named("recover_loan"), [("9",)])

    def test_deployment_queries(self) -> None:
        """Records are listed by borrower and missing ids are 404."""
        asyncio.run(self.repository.save_deployment(DeploymentRecord(loan_id="1", borrower="dave")))
        self.assertEqual(self.client.get("/deployments/404").status_code, 404)
        listing = self.client.get("/deployments/borrower/dave").json()
        self.assertEqual([item["loanId"] for item in listing], ["1"])
        self.assertEqual(self.client.get("/deployments/borrower/nobody").json(), [])

    def test_health_reports_counts(self) -> None:
        """Health summarizes deployment state."""
        asyncio.run(
            self.repository.save_deployment(
                DeploymentRecord(loan_id="1", borrower="dave", status=DeploymentStatus.DEPLOYED, program_id="P")
            )
        )
        body = self.client.get("/health").json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["activeLoans"], 1)
        self.assertEqual(body["totalDeployments"], 1)
        self.assertEqual(body["pendingReconciliation"], 1)
        self.assertIn("timestamp", body)

    def test_metrics_exposition(self) -> None:
        """Prometheus text format is served."""
        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("deployer_deployments_total", response.text)

    def test_indexer_pass_through(self) -> None:
        """Loan lookups are served from the indexer."""
        self.assertEqual(self.client.get("/loans/0").json()["borrower"], "alice")
        self.assertEqual(self.client.get("/loans/77").status_code, 404)
        self.assertEqual([item["loanId"] for item in self.client.get("/loans/recent?limit=5").json()], ["0"])
        self.assertEqual(len(self.client.get("/loans/borrower/alice").json()), 1)
        self.assertEqual(self.client.get("/protocol-config").status_code, 404)

    def test_indexer_outage_is_502(self) -> None:
        """Indexer failures map to a gateway error."""
        self.indexer.fail = True
        self.assertEqual(self.client.get("/loans/recent").status_code, 502)


if __name__ == "__main__":
    unittest.main()
