"""Tests for the local-testnet command line."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import psutil
import pytest
import yaml

from local_testnet import __main__ as cli
from local_testnet.config import NodeCommand, TestnetSettings
from local_testnet.lifecycle import LifecycleController, LifecycleState, RunStore
from local_testnet.process import NodeProcessManager, RunningNode, StopOutcome
from local_testnet.types import NodeRole
from tests.local_testnet.helpers import fake_command


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    """Leave log handling to caplog instead of installing a stderr handler per call."""
    monkeypatch.setattr(cli, "setup_logging", lambda *_args: None)
    caplog.set_level(logging.INFO)


@pytest.fixture
def write_config(
    tmp_path: Path, port_bases: dict[NodeRole, int]
) -> Callable[..., Path]:
    """Write a YAML settings file running fake nodes on this test's ports."""

    def _write(commands: dict[NodeRole, NodeCommand] | None = None, **extra: object) -> Path:
        merged = {role: fake_command(role) for role in NodeRole} | (commands or {})
        data = {
            "VALIDATOR_COUNT": 4,
            "GENESIS_DELAY": 10,
            "HEALTH_TIMEOUT": 10.0,
            "HEALTH_POLL_INTERVAL": 0.1,
            "STOP_GRACE": 3.0,
            "PORT_BASES": {role.value: base for role, base in port_bases.items()},
            "COMMANDS": {
                role.value: command.model_dump(mode="json", by_alias=True, exclude_none=True)
                for role, command in merged.items()
            },
            **extra,
        }
        path = tmp_path / "testnet.yaml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def run_cli(data_dir: Path) -> Callable[..., int]:
    """Invoke the CLI against this test's data directory."""

    def _run(*argv: str, config: Path | None = None) -> int:
        prefix = ["--data-dir", str(data_dir)]
        if config is not None:
            prefix += ["--config", str(config)]
        return cli.main([*prefix, *argv])

    return _run


@pytest.fixture
def cli_cleanup(run_cli: Callable[..., int], write_config: Callable[..., Path]) -> Iterator[None]:
    """Clean whatever run the test leaves behind, through the CLI itself."""
    yield
    run_cli("clean", config=write_config())


class TestWithoutRun:
    """Commands on an empty data directory."""

    def test_stop(self, run_cli: Callable[..., int]) -> None:
        """Nothing to stop is a success."""
        assert run_cli("stop") == cli.EXIT_OK

    def test_dump_logs(
        self, run_cli: Callable[..., int], capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Nothing to dump prints nothing."""
        assert run_cli("dump-logs") == cli.EXIT_OK
        assert capsys.readouterr().out == ""

    def test_clean(self, run_cli: Callable[..., int]) -> None:
        """Cleaning is repeatable."""
        assert run_cli("clean") == cli.EXIT_OK
        assert run_cli("clean") == cli.EXIT_OK


class TestArguments:
    """Argument and configuration errors."""

    def test_command_required(self) -> None:
        """A subcommand must be given."""
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 2

    def test_blinded_flag(self) -> None:
        """-p selects blinded-block mode."""
        args = cli.build_parser().parse_args(["start", "genesis.json", "-p", "--nodes", "2"])

        assert args.blinded
        assert args.nodes == 2
        assert args.genesis == Path("genesis.json")

    def test_tail_must_be_non_negative(self, run_cli: Callable[..., int]) -> None:
        """A negative --tail is rejected while parsing, before any log is read."""
        with pytest.raises(SystemExit) as exc_info:
            run_cli("dump-logs", "--run-id", "r1", "--tail", "-1")
        assert exc_info.value.code == 2

        assert cli.build_parser().parse_args(["dump-logs", "--tail", "0"]).tail == 0

    def test_invalid_tail_from_code(self, data_dir: Path) -> None:
        """dump-logs reports an invalid tail and still exits 0."""
        controller = LifecycleController(settings=TestnetSettings(), data_dir=data_dir)
        args = argparse.Namespace(run_id="r1", tail=-1)

        assert asyncio.run(cli.cmd_dump_logs(controller, args)) == cli.EXIT_OK

    def test_missing_config(self, run_cli: Callable[..., int], tmp_path: Path) -> None:
        """An absent settings file is a configuration error."""
        assert run_cli("stop", config=tmp_path / "absent.yaml") == cli.EXIT_CONFIG

    def test_invalid_config(self, run_cli: Callable[..., int], tmp_path: Path) -> None:
        """Out-of-range settings are a configuration error."""
        path = tmp_path / "bad.yaml"
        path.write_text("NETWORK_ID: -1\n")

        assert run_cli("stop", config=path) == cli.EXIT_CONFIG

    def test_bad_template(
        self,
        run_cli: Callable[..., int],
        write_config: Callable[..., Path],
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A missing genesis template fails start without launching anything."""
        code = run_cli("start", str(tmp_path / "absent.json"), config=write_config())

        assert code == cli.EXIT_FAILURE
        assert "absent.json" in caplog.text


@pytest.mark.e2e
@pytest.mark.timeout(90)
class TestLifecycle:
    """Full runs through the command line, one process call per command."""

    def test_start_dump_stop_clean(
        self,
        run_cli: Callable[..., int],
        write_config: Callable[..., Path],
        genesis_template: Path,
        data_dir: Path,
        capsys: pytest.CaptureFixture[str],
        cli_cleanup: None,
    ) -> None:
        """Each command picks up the run left by the previous one."""
        config = write_config()

        assert run_cli("start", str(genesis_template), config=config) == cli.EXIT_OK
        record = RunStore(data_dir).load_current()
        assert record is not None
        assert record.state is LifecycleState.RUNNING
        pids = [node.pid for node in record.nodes.values()]

        capsys.readouterr()
        assert run_cli("dump-logs", "--tail", "5", config=config) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "==> consensus_0 <==" in out
        assert "==> execution_0 <==" in out

        assert run_cli("stop", config=config) == cli.EXIT_OK
        assert not any(_running(pid) for pid in pids)

        assert run_cli("clean", config=config) == cli.EXIT_OK
        assert RunStore(data_dir).current_run_id() is None
        assert not (data_dir / "runs" / record.run_id).exists()

    def test_start_failure(
        self,
        run_cli: Callable[..., int],
        write_config: Callable[..., Path],
        genesis_template: Path,
        caplog: pytest.LogCaptureFixture,
        cli_cleanup: None,
    ) -> None:
        """A node failure exits 1 and names the node and its role."""
        config = write_config(
            {NodeRole.CONSENSUS: NodeCommand(command=["{python}", "-c", "raise SystemExit(5)"])}
        )

        assert run_cli("start", str(genesis_template), config=config) == cli.EXIT_FAILURE
        assert "Node consensus_0 (consensus) failed" in caplog.text

        assert run_cli("dump-logs", config=config) == cli.EXIT_OK
        assert run_cli("clean", config=config) == cli.EXIT_OK

    def test_second_start_refused(
        self,
        run_cli: Callable[..., int],
        write_config: Callable[..., Path],
        genesis_template: Path,
        cli_cleanup: None,
    ) -> None:
        """Starting over an existing run fails until it is cleaned."""
        config = write_config()

        assert run_cli("start", str(genesis_template), config=config) == cli.EXIT_OK
        assert run_cli("start", str(genesis_template), config=config) == cli.EXIT_FAILURE

    def test_foreground_stops_on_node_death(
        self,
        run_cli: Callable[..., int],
        write_config: Callable[..., Path],
        genesis_template: Path,
        data_dir: Path,
        cli_cleanup: None,
    ) -> None:
        """--foreground stops the network when a node dies and exits 1."""
        config = write_config(
            {NodeRole.CONSENSUS: fake_command(NodeRole.CONSENSUS, "--exit-after", "2")}
        )

        code = run_cli("start", str(genesis_template), "--foreground", config=config)

        assert code == cli.EXIT_FAILURE
        record = RunStore(data_dir).load_current()
        assert record is not None
        assert record.state is LifecycleState.STOPPED

    def test_foreground_reports_stop_failures(
        self,
        run_cli: Callable[..., int],
        write_config: Callable[..., Path],
        genesis_template: Path,
        caplog: pytest.LogCaptureFixture,
        monkeypatch: pytest.MonkeyPatch,
        cli_cleanup: None,
    ) -> None:
        """A node that cannot be stopped after a death is logged, not a traceback."""
        config = write_config(
            {NodeRole.CONSENSUS: fake_command(NodeRole.CONSENSUS, "--exit-after", "2")}
        )
        stop = NodeProcessManager.stop

        async def refuse_execution(
            manager: NodeProcessManager, node: RunningNode, grace: float | None = None
        ) -> StopOutcome:
            if node.node_id == "execution_0":
                raise PermissionError("cannot signal")
            return await stop(manager, node, grace)

        with monkeypatch.context() as patch:
            patch.setattr(NodeProcessManager, "stop", refuse_execution)
            code = run_cli("start", str(genesis_template), "--foreground", config=config)

        assert code == cli.EXIT_FAILURE
        assert "execution_0: cannot signal" in caplog.text


def _running(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
