"""Tests for the command line interface."""

import json
from unittest.mock import patch

import pytest

from tithebook.runner import create_cli, main
from tithebook.schemas.member_record import write_roster


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config file whose state DB lives in the test directory."""
    for name in ("TITHEBOOK_PERSISTENCE_ENABLED", "TITHEBOOK_SEMANTIC_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TITHEBOOK_STATE_DB", str(tmp_path / "state.db"))
    path = tmp_path / "config.yaml"
    path.write_text("persistence_enabled: true\n")
    return path


def run(config_file, *args: str) -> int:
    return main(["-c", str(config_file), *args])


class TestParser:
    """Tests for argument parsing."""

    def test_commands_registered(self):
        parser = create_cli()
        for argv in (
            ["init-config"],
            ["extract", "p1.jpg", "--assembly", "Central"],
            ["sequence", "pages.json"],
            ["reconcile", "roster.csv", "--assembly", "Central"],
            ["match", "Kofi", "--assembly", "Central"],
            ["correct", "1OO", "100", "--assembly", "Central"],
            ["suggest", "1OO", "--assembly", "Central"],
            ["export-corrections", "out.json"],
            ["import-corrections", "in.json"],
            ["status"],
        ):
            assert parser.parse_args(argv).command == argv[0]

    def test_correct_arguments(self):
        args = create_cli().parse_args(
            ["correct", "1OO", "100", "--assembly", "Central", "--member-id", "TAC90AMA"]
        )
        assert args.original == "1OO"
        assert args.value == 100.0
        assert args.member_id == "TAC90AMA"

    def test_reconcile_conflict_indices(self):
        args = create_cli().parse_args(
            ["reconcile", "r.csv", "--assembly", "A", "--apply", "--use-new", "0", "2"]
        )
        assert args.apply is True
        assert args.use_new == [0, 2]

    def test_no_command(self, capsys):
        assert main([]) == 1


class TestInitConfig:
    def test_writes_once(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1
        assert main(["-c", str(path), "init-config", "--force"]) == 0

    def test_invalid_config_rejected(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("matching:\n  high_threshold: 2\n")

        assert main(["-c", str(path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out


class TestCorrectionCommands:
    """Tests for correct / suggest / export / import / status."""

    def test_correct_then_suggest(self, config_file, capsys):
        assert run(config_file, "correct", "1OO", "100", "--assembly", "Central") == 0
        assert "Learned '1OO' → 100 for Central" in capsys.readouterr().out

        assert run(config_file, "suggest", "1oo", "--assembly", "central") == 0
        assert "💡 100 (90%, seen 1x in central)" in capsys.readouterr().out

    def test_noop_correction(self, config_file, capsys):
        assert run(config_file, "correct", "100", "100", "--assembly", "Central") == 0
        assert "Nothing recorded" in capsys.readouterr().out

    def test_no_learned_suggestion(self, config_file, capsys):
        assert run(config_file, "suggest", "50", "--assembly", "Central") == 0
        assert "💡" not in capsys.readouterr().out

    def test_status_counts(self, config_file, capsys):
        run(config_file, "correct", "1OO", "100", "--assembly", "Central")
        capsys.readouterr()

        assert run(config_file, "status") == 0
        out = capsys.readouterr().out
        assert "Amount corrections:     1" in out
        assert "Members:                0" in out

    def test_export_and_import(self, config_file, tmp_path, monkeypatch, capsys):
        run(config_file, "correct", "1OO", "100", "--assembly", "Central")
        export_path = tmp_path / "corrections.json"
        assert run(config_file, "export-corrections", str(export_path)) == 0

        records = json.loads(export_path.read_text())
        assert records[0]["original"] == "1OO"
        assert records[0]["scope"] == "central"

        monkeypatch.setenv("TITHEBOOK_STATE_DB", str(tmp_path / "fresh.db"))
        capsys.readouterr()
        assert run(config_file, "import-corrections", str(export_path)) == 0
        assert "Imported 1 of 1 correction(s)" in capsys.readouterr().out

    def test_import_rejects_non_list(self, config_file, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text('{"original": "1OO"}')
        assert run(config_file, "import-corrections", str(path)) == 1

    def test_stateless_status(self, config_file, monkeypatch, capsys):
        monkeypatch.setenv("TITHEBOOK_PERSISTENCE_ENABLED", "false")
        assert run(config_file, "status") == 0
        assert "Stateless mode" in capsys.readouterr().out


class TestRosterCommands:
    """Tests for reconcile / match / sequence / extract."""

    @pytest.fixture
    def roster_file(self, tmp_path, sample_roster):
        path = tmp_path / "roster.json"
        write_roster(path, sample_roster)
        return path

    def test_reconcile_dry_run(self, config_file, roster_file, tmp_path, capsys):
        report_path = tmp_path / "report.json"

        assert run(
            config_file, "reconcile", str(roster_file), "--assembly", "Central",
            "--output", str(report_path),
        ) == 0

        out = capsys.readouterr().out
        assert "New members:           3" in out
        assert "Without ID (incoming): 1" in out
        assert "Dry run" in out
        assert json.loads(report_path.read_text())["summary"]["new"] == 3

    def test_reconcile_apply_then_match(self, config_file, roster_file, capsys):
        assert run(config_file, "reconcile", str(roster_file), "--assembly", "Central", "--apply") == 0
        assert "Added 3, updated 0" in capsys.readouterr().out

        assert run(config_file, "match", "Kwame Asanti", "--assembly", "Central") == 0
        assert "👤 Kwame Asante Boakye (TAC91KWA|OLD-003)" in capsys.readouterr().out

    def test_match_without_roster(self, config_file, capsys):
        assert run(config_file, "match", "Kofi Mensah", "--assembly", "Nowhere") == 1
        assert "No stored roster for Nowhere" in capsys.readouterr().out

    def test_reconcile_unreadable_roster(self, config_file, tmp_path, capsys):
        path = tmp_path / "roster.xlsx"
        path.write_text("x")
        assert run(config_file, "reconcile", str(path), "--assembly", "Central") == 1

    def test_sequence(self, config_file, sample_pages, tmp_path, capsys):
        pages_path = tmp_path / "pages.json"
        pages_path.write_text(json.dumps([p.to_dict() for p in sample_pages]))
        output = tmp_path / "sequenced.json"

        assert run(config_file, "sequence", str(pages_path), "--output", str(output)) == 0

        assert "Page order: 1, 0" in capsys.readouterr().out
        result = json.loads(output.read_text())
        assert [e["row_no"] for e in result["sequence"]["merged"]] == [1, 2, 3, 16, 17, 18]

    def test_sequence_gap_threshold(self, config_file, sample_pages, tmp_path, capsys):
        pages_path = tmp_path / "pages.json"
        pages_path.write_text(json.dumps([p.to_dict() for p in sample_pages]))

        assert run(config_file, "sequence", str(pages_path)) == 0
        assert "gaps after [3]" in capsys.readouterr().out

        config_file.write_text("sequencing:\n  gap_threshold: 20\n")
        assert run(config_file, "sequence", str(pages_path)) == 0
        assert "gaps after none" in capsys.readouterr().out

    def test_extract_missing_image(self, config_file, tmp_path, capsys):
        missing = tmp_path / "nope.jpg"
        assert run(config_file, "extract", str(missing), "--assembly", "Central") == 1
        assert "Not found" in capsys.readouterr().out

    @patch("tithebook.runner.main.SemanticMatcher")
    @patch("tithebook.runner.main.VisionClient")
    def test_extract_closes_semantic_client(
        self, vision_cls, semantic_cls, config_file, roster_file, sample_pages, tmp_path,
        monkeypatch, capsys,
    ):
        run(config_file, "reconcile", str(roster_file), "--assembly", "Central", "--apply")
        monkeypatch.setenv("TITHEBOOK_SEMANTIC_ENABLED", "true")
        image = tmp_path / "page1.jpg"
        image.write_bytes(b"jpeg")
        client = vision_cls.from_config.return_value.__enter__.return_value
        client.extract_file.return_value = sample_pages[1]
        semantic_cls.return_value.match.return_value = None
        capsys.readouterr()

        assert run(config_file, "extract", str(image), "--assembly", "Central") == 0

        assert "Kofi Mensah" in capsys.readouterr().out
        semantic_cls.return_value.close.assert_called_once()
