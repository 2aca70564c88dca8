import logging
from pathlib import Path

import pytest

import emrunner
from emrunner import cli


@pytest.fixture
def in_workspace(workspace, monkeypatch):
    monkeypatch.setattr(cli, "get_workspace_root", lambda: workspace)
    return workspace


def test_parser_run_arguments():
    args = cli.build_arg_parser().parse_args(
        ["-v", "run", "--run-name", "smoke", "--output-dir", "out", "--meta-filepath", "meta.json", "fw.elf"]
    )
    assert args.cmd == "run"
    assert args.verbose
    assert args.run_name == "smoke"
    assert args.output_dir == Path("out")
    assert args.meta_filepath == Path("meta.json")
    assert args.binary == Path("fw.elf")


def test_parser_collect_output_is_optional():
    parser = cli.build_arg_parser()
    assert parser.parse_args(["collect"]).output is None
    assert parser.parse_args(["collect", "all.json"]).output == Path("all.json")


def test_log_level_from_environment(monkeypatch):
    monkeypatch.setenv("EMRUNNER_LOG", "DEBUG")
    assert cli.build_arg_parser().parse_args(["collect"]).log_level == "DEBUG"


def test_subcommand_is_required():
    with pytest.raises(SystemExit) as excinfo:
        cli.build_arg_parser().parse_args([])
    assert excinfo.value.code == 2


def test_version(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--version"])
    assert excinfo.value.code == 0
    assert capsys.readouterr().out.strip() == f"emrunner {emrunner.__version__}"


def test_collect_without_runs(in_workspace, caplog):
    with caplog.at_level(logging.INFO):
        assert cli.main(["collect", str(in_workspace / "coverage.json")]) == 0
    assert "No coverage to collect." in caplog.text


def test_run_missing_binary_fails(in_workspace, caplog):
    with caplog.at_level(logging.ERROR):
        assert cli.main(["run", str(in_workspace / "missing.elf")]) == 1
    assert "Embedded runner failed" in caplog.text
    assert "missing.elf" in caplog.text


def test_invalid_runner_config_fails(in_workspace, caplog):
    cfg = in_workspace / ".embedded" / "runner.toml"
    cfg.write_text("rtt-port = 'not a port'\n")
    with caplog.at_level(logging.ERROR):
        assert cli.main(["collect"]) == 1
    assert "rtt_port" in caplog.text
