"""
Unit tests for the command line entry point.
"""

from unittest.mock import MagicMock, patch

import pytest

from usage_aggregator.main import COMMANDS, build_parser, cmd_downsample, cmd_ingest, run


class TestParser:
    """Test argument parsing."""

    def test_every_command_has_a_handler(self):
        parser = build_parser()
        for command in COMMANDS:
            args = parser.parse_args(["ingest", "batch.json"] if command == "ingest" else [command])
            assert args.command == command

    def test_summary_arguments(self):
        args = build_parser().parse_args(
            ["--config", "c.yaml", "summary", "--scope-type", "user", "--scope-id", "1", "--source", "pbs"]
        )
        assert args.config == "c.yaml"
        assert (args.scope_type, args.scope_id, args.source, args.allocation_id) == ("user", "1", "pbs", None)

    def test_unknown_source_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["summary", "--source", "slurm"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """Test command handlers against mocked components."""

    def test_downsample_exit_code_reflects_failures(self):
        components = MagicMock()
        components.downsampler.return_value.run.return_value.groups_failed = 2
        args = build_parser().parse_args(["downsample", "--now", "2025-03-15T12:00:00Z"])

        assert cmd_downsample(components, args, MagicMock()) == 1
        (now,) = components.downsampler.return_value.run.call_args[0]
        assert now.isoformat() == "2025-03-15T12:00:00+00:00"

    def test_ingest_rejects_invalid_payload(self, tmp_path, capsys):
        payload = tmp_path / "batch.json"
        payload.write_text('{"events": [{"source": "slurm"}]}')
        args = build_parser().parse_args(["ingest", str(payload)])

        assert cmd_ingest(MagicMock(), args, MagicMock()) == 1
        assert '"detail"' in capsys.readouterr().out


class TestRun:
    """Test the run wrapper."""

    @patch("usage_aggregator.main.Components")
    @patch("usage_aggregator.main.get_config")
    def test_connectivity_failure(self, mock_get_config, mock_components, standard_config):
        mock_get_config.return_value = standard_config
        components = mock_components.return_value.__enter__.return_value
        components.store.test_connectivity.return_value = False

        assert run(build_parser().parse_args(["init-db"])) == 1
        components.store.ensure_schema.assert_not_called()

    @patch("usage_aggregator.main.Components")
    @patch("usage_aggregator.main.get_config")
    def test_init_db(self, mock_get_config, mock_components, standard_config):
        mock_get_config.return_value = standard_config
        components = mock_components.return_value.__enter__.return_value
        components.store.test_connectivity.return_value = True

        assert run(build_parser().parse_args(["init-db"])) == 0
        components.store.ensure_schema.assert_called_once()

    @patch("usage_aggregator.main.Components")
    @patch("usage_aggregator.main.get_config")
    def test_command_error_returns_failure(self, mock_get_config, mock_components, standard_config):
        mock_get_config.return_value = standard_config
        components = mock_components.return_value.__enter__.return_value
        components.store.test_connectivity.return_value = True
        components.store.ensure_schema.side_effect = RuntimeError("permission denied")

        assert run(build_parser().parse_args(["init-db"])) == 1
