"""Tests for the operator command line."""

import csv
import json

import pytest

from ttb_compliance.cli import build_parser, main
from ttb_compliance.config.companies_loader import PACKAGED_COMPANIES_DIR


@pytest.fixture
def run(tmp_path, capsys):
    """Run the CLI against a fresh database and return (exit code, stdout, stderr)."""
    url = f"sqlite:///{tmp_path / 'cli.db'}"

    def _run(*argv):
        code = main(["--database-url", url, "--log-level", "WARNING", *argv])
        captured = capsys.readouterr()
        return code, captured.out, captured.err

    code, _, _ = _run("init-db")
    assert code == 0
    return _run


@pytest.fixture
def loaded(run):
    code, out, _ = run("load-companies", "--dir", str(PACKAGED_COMPANIES_DIR))
    assert code == 0
    return {row["key"]: row["id"] for row in json.loads(out)}


class TestParser:
    """Tests for argument parsing."""

    def test_subcommand_required(self):
        """Test that running without a command is an error."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_actor_defaults_to_cli(self):
        """Test the default actor recorded for changes."""
        args = build_parser().parse_args(["archive", "7"])

        assert args.actor == "cli"
        assert args.report_id == 7

    def test_rejects_unknown_decision(self):
        """Test that review only accepts approve or reject."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["review", "7", "maybe"])


class TestCommands:
    """Tests for running commands end to end."""

    def test_gauge(self, run):
        """Test converting a gauge without touching the database."""
        code, out, _ = run("gauge", "--proof", "125.0", "--temperature", "75", "--volume", "50")

        result = json.loads(out)
        assert code == 0
        assert result["correction_factor"] == "0.9865"
        assert result["wine_gallons"] == "49.33"
        assert result["proof_gallons"] == "61.66"

    def test_invalid_gauge_exits_nonzero(self, run):
        """Test that domain errors print a message and exit with status 1."""
        code, out, err = run("gauge", "--proof", "250", "--temperature", "60", "--volume", "10")

        assert code == 1
        assert out == ""
        assert "error: Proof must be between 0 and 200" in err

    def test_load_companies(self, loaded):
        """Test that the packaged profiles become companies."""
        assert set(loaded) == {"copper_still", "riverbend_spirits"}

    def test_report_lifecycle(self, run, loaded):
        """Test generating, reviewing and filing a report from the command line."""
        code, out, _ = run("generate", "--company", "copper_still", "--month", "3", "--year", "2025")
        report = json.loads(out)
        assert code == 0
        assert report["company_id"] == loaded["copper_still"]
        assert report["period"] == "2025-03"
        assert report["form_type"] == "5110_28"
        assert report["status"] == "draft"

        report_id = str(report["id"])
        assert run("submit-for-review", report_id, "--actor", "alice")[0] == 0
        code, out, _ = run("review", report_id, "approve", "--actor", "bob", "--notes", "ok")
        assert json.loads(out)["status"] == "approved"
        code, out, _ = run("mark-submitted", report_id, "TTB-2025-0042")
        assert json.loads(out)["status"] == "submitted"
        code, out, _ = run("archive", report_id)
        assert json.loads(out)["status"] == "archived"

    def test_duplicate_generation_fails(self, run, loaded):
        """Test that a second report for the same period is refused."""
        run("generate", "--company", str(loaded["copper_still"]), "--month", "3", "--year", "2025")

        code, _, err = run("generate", "--company", "copper_still", "--month", "3", "--year", "2025")

        assert code == 1
        assert err.startswith("error:")

    def test_validate_exit_code(self, run, tmp_path):
        """Test that validate exits with status 2 when the report has errors."""
        profiles = tmp_path / "profiles"
        profiles.mkdir()
        (profiles / "unlicensed.yaml").write_text("name: Unlicensed Still\n", encoding="utf-8")
        run("load-companies", "--dir", str(profiles))
        code, out, _ = run("generate", "--company", "unlicensed", "--month", "3", "--year", "2025")
        report = json.loads(out)
        assert report["errors"]

        code, out, _ = run("validate", str(report["id"]))

        assert code == 2
        assert json.loads(out)["status"] == "validation_failed"

    def test_unknown_report(self, run):
        """Test that commands on a missing report fail cleanly."""
        code, _, err = run("reopen", "999")

        assert code == 1
        assert "999" in err

    def test_unknown_company(self, run):
        """Test that an unknown profile key fails cleanly."""
        code, _, err = run("tax-preview", "--company", "ghost", "--proof-gallons", "10")

        assert code == 1
        assert "ghost" in err

    def test_tax_preview(self, run, loaded):
        """Test previewing tax for an eligible company."""
        code, out, _ = run(
            "tax-preview", "--company", "copper_still", "--proof-gallons", "100", "--on", "2025-03-10"
        )

        result = json.loads(out)
        assert code == 0
        assert result["eligible"] is True
        assert result["reduced_rate_gallons"] == "100.00"
        assert result["total_tax"] == "270.00"

    def test_next_runs(self, run, loaded):
        """Test listing each company's next scheduled run."""
        code, out, _ = run("next-runs", "--after", "2025-04-01T00:00:00")

        rows = {row["company_id"]: row for row in json.loads(out)}
        copper = rows[loaded["copper_still"]]
        assert copper["next_run"] == "2025-04-03T06:00:00"
        assert copper["reports_on"] == "2025-03"
        # 2025-04-04 is a Friday
        assert rows[loaded["riverbend_spirits"]]["next_run"] == "2025-04-04T14:00:00"

    def test_run_schedule(self, run, loaded):
        """Test that only due companies generate and a repeat run skips."""
        code, out, _ = run("run-schedule", "--now", "2025-04-03T06:20:00")

        runs = json.loads(out)
        assert code == 0
        assert [r["company_id"] for r in runs] == [loaded["copper_still"]]
        assert runs[0]["period"] == "2025-03"
        assert runs[0]["report_id"] is not None

        code, out, _ = run("run-schedule", "--now", "2025-04-03T06:40:00")
        assert json.loads(out)[0]["skipped"] == "already_exists"

    def test_export_audit(self, run, loaded, tmp_path):
        """Test writing the audit trail to a CSV file."""
        output = tmp_path / "audit.csv"

        code, _, _ = run("export-audit", "--entity-type", "company", "--output", str(output))

        with open(output, newline="", encoding="utf-8") as stream:
            rows = list(csv.reader(stream))
        assert code == 0
        assert len(rows) == 3
        assert {row[1] for row in rows[1:]} == {"cli"}
