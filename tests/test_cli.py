"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import yaml
from typer.testing import CliRunner

from tryon_core.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from tryon_core.client.poller import PollResult
from tryon_core.core.errors import PollTimeoutError
from tryon_core.core.jobs import JobStore
from tryon_core.storage.repository import (
    fetch_active_scenarios,
    fetch_products,
    fetch_store_financials,
)

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "cli.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _invoke(self, *args):
        return runner.invoke(app, ["--db", self.db_path, *args])

    def test_no_command_prints_hint(self):
        result = self._invoke()

        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.stdout

    def test_init(self):
        result = self._invoke("init")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.stdout
        assert os.path.exists(self.db_path)

    def test_provision_and_balance(self):
        result = self._invoke("provision", "store-1", "--balance", "20", "--overdraft", "5", "--plan", "growth")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Store store-1 provisioned" in result.stdout
        financials = fetch_store_financials("store-1", self.db_path)
        assert financials.credits_balance == 20
        assert financials.overdraft_limit == 5

        result = self._invoke("balance", "store-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "20" in result.stdout
        assert "growth" in result.stdout

    def test_provision_rejects_unknown_plan(self):
        result = self._invoke("provision", "store-1", "--balance", "1", "--overdraft", "0", "--plan", "platinum")

        assert result.exit_code == EXIT_CODE_FAIL

    def test_balance_unknown_store_is_sandbox(self):
        self._invoke("init")

        result = self._invoke("balance", "ghost")

        assert result.exit_code == EXIT_CODE_PASS
        assert "sandbox" in result.stdout

    def test_balance_without_schema(self):
        result = self._invoke("balance", "store-1")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Database not initialized" in result.stdout

    def test_import_scenarios(self):
        path = os.path.join(self.temp_dir, "scenarios.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump([
                {"id": "beach", "image_url": "https://x/beach.jpg", "category": "beach", "tags": ["beach"]},
                {"id": "city", "image_url": "https://x/city.jpg", "category": "urban"},
            ], f)

        result = self._invoke("import-scenarios", path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Imported 2 scenarios" in result.stdout
        assert [s.id for s in fetch_active_scenarios(self.db_path)] == ["beach", "city"]

    def test_import_scenarios_rejects_incomplete_entries(self):
        path = os.path.join(self.temp_dir, "scenarios.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump([{"id": "beach", "category": "beach"}], f)

        result = self._invoke("import-scenarios", path)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "image_url" in result.stdout

    def test_import_products(self):
        path = os.path.join(self.temp_dir, "products.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump([
                {"id": "p1", "name": "Biquini Beach", "category": "Moda Praia"},
                {"id": "p2", "name": "Vestido Festa"},
            ], f)

        result = self._invoke("import-products", path)

        assert result.exit_code == EXIT_CODE_PASS
        assert "Imported 2 products" in result.stdout
        products = fetch_products(["p1", "p2"], self.db_path)
        assert [p.name for p in products] == ["Biquini Beach", "Vestido Festa"]
        assert products[0].category == "Moda Praia"

    def test_import_products_requires_name(self):
        path = os.path.join(self.temp_dir, "products.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump([{"id": "p1", "category": "Moda Praia"}], f)

        result = self._invoke("import-products", path)

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error importing products" in result.stdout
        assert "name" in result.stdout

    def test_job_status(self):
        self._invoke("init")
        job_id = JobStore(self.db_path).create("store-1", "res-1", "https://x/p.jpg", ["p1"])

        result = self._invoke("job-status", job_id)

        assert result.exit_code == EXIT_CODE_PASS
        assert "PENDING" in result.stdout
        assert "0/3" in result.stdout

    def test_job_status_unknown(self):
        self._invoke("init")

        result = self._invoke("job-status", "missing")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "not found" in result.stdout

    def test_sweep_on_empty_database(self):
        result = self._invoke("sweep")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Redispatched: 0" in result.stdout
        assert "Failed: 0" in result.stdout

    def test_invalid_config_file(self):
        path = os.path.join(self.temp_dir, "config.yaml")
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump({"poller": {"deadline_seconds": 10}}, f)

        result = runner.invoke(app, ["--config", path, "init"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.stdout


class TestPollCommand:
    """Test the poll command with a mocked poller."""

    def test_poll_success(self):
        with patch("tryon_core.cli.main.JobPoller") as mock_poller_cls:
            poller = MagicMock()
            poller.__enter__.return_value = poller
            poller.__exit__.return_value = False
            poller.poll.return_value = PollResult(
                job_id="job-1",
                image_url="https://cdn.example.com/look.png",
                result={"imageUrl": "https://cdn.example.com/look.png"},
                attempts=3,
                elapsed_seconds=4.0,
            )
            mock_poller_cls.return_value = poller

            result = runner.invoke(app, ["poll", "job-1", "--base-url", "http://api.test"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "https://cdn.example.com/look.png" in result.stdout
        assert mock_poller_cls.call_args.args == ("http://api.test",)

    def test_poll_timeout_fails(self):
        with patch("tryon_core.cli.main.JobPoller") as mock_poller_cls:
            poller = MagicMock()
            poller.__enter__.return_value = poller
            poller.__exit__.return_value = False
            poller.poll.side_effect = PollTimeoutError("Job job-1 not finished after 180s", job_id="job-1")
            mock_poller_cls.return_value = poller

            result = runner.invoke(app, ["poll", "job-1"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "PollTimeoutError" in result.stdout

    def test_poll_rejects_deadline_outside_range(self):
        result = runner.invoke(app, ["poll", "job-1", "--deadline", "30"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "between 120 and 300" in result.stdout
