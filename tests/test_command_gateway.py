"""Tests for CommandGateway: foreground, background, install and logs."""

import asyncio

import pytest

from conftest import SESSION_ID
from playground_gateway.command_gateway import CommandGateway
from playground_gateway.exceptions import (
    InvalidRequestError,
    ProcessNotFoundError,
    SessionNotFoundError,
)
from playground_gateway.runtime.base import ExecResult
from playground_gateway.sessions.models import ProjectKind


@pytest.fixture
def gateway(provisioner):
    return CommandGateway(
        provisioner,
        default_timeout=60,
        max_timeout=300,
        max_command_length=100,
        port_watch_seconds=1,
        port_poll_interval=0.01,
    )


# ---------------------------------------------------------------------------
# Foreground
# ---------------------------------------------------------------------------


class TestForeground:
    @pytest.mark.asyncio
    async def test_success(self, gateway, provisioner, runtime):
        await provisioner.create(SESSION_ID)

        result = await gateway.exec(SESSION_ID, "echo ok")

        assert (result.stdout, result.stderr, result.exit_code) == ("ok\n", "", 0)
        assert result.background is False
        assert runtime.commands == [("echo ok", 60)]
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_failing_command_is_a_result_not_an_error(self, gateway, provisioner, runtime):
        await provisioner.create(SESSION_ID)
        runtime.exec_result = ExecResult(stdout="", stderr="npm ERR! missing script\n", exit_code=1)

        result = await gateway.exec(SESSION_ID, "npm run nope")

        assert result.exit_code == 1
        assert "missing script" in result.stderr
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_timeout_is_capped(self, gateway, provisioner, runtime):
        await provisioner.create(SESSION_ID)

        await gateway.exec(SESSION_ID, "sleep 1", timeout=10_000)
        await gateway.exec(SESSION_ID, "sleep 1", timeout=5)

        assert [t for _, t in runtime.commands] == [300, 5]
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_unknown_session(self, gateway):
        with pytest.raises(SessionNotFoundError):
            await gateway.exec("ghost", "ls")

    @pytest.mark.asyncio
    async def test_unknown_session_wins_over_invalid_command(self, gateway):
        with pytest.raises(SessionNotFoundError):
            await gateway.exec("ghost", "")
        with pytest.raises(SessionNotFoundError):
            await gateway.install("ghost", [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["", "   ", "x" * 101])
    async def test_invalid_commands(self, gateway, provisioner, command):
        await provisioner.create(SESSION_ID)
        with pytest.raises(InvalidRequestError):
            await gateway.exec(SESSION_ID, command)
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_vanished_environment_drops_session(self, gateway, provisioner, runtime):
        result = await provisioner.create(SESSION_ID)
        runtime.vanish(result.environment.id)

        with pytest.raises(SessionNotFoundError):
            await gateway.exec(SESSION_ID, "ls")
        assert provisioner.get(SESSION_ID) is None

    @pytest.mark.asyncio
    async def test_simulated_environment_reports_not_executed(self, gateway, provisioner, runtime):
        runtime.unavailable = True
        await provisioner.create(SESSION_ID)

        result = await gateway.exec(SESSION_ID, "node index.js")

        assert result.exit_code == 0
        assert "[simulated]" in result.stdout
        assert "not executed" in result.stderr
        provisioner.timers.cancel_all()


# ---------------------------------------------------------------------------
# Background
# ---------------------------------------------------------------------------


class TestBackground:
    @pytest.mark.asyncio
    async def test_start_records_process(self, gateway, provisioner):
        created = await provisioner.create(SESSION_ID)

        result = await gateway.exec(SESSION_ID, "npm run dev", background=True)

        assert result.background is True
        assert result.exit_code == 0
        assert str(result.pid) in result.stdout
        assert result.log_path.startswith("/tmp/") and result.log_path.endswith(".log")
        process = created.session.processes[result.pid]
        assert process.command == "npm run dev"
        await gateway.close()
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_port_watcher_binds_exposed_port(self, gateway, provisioner, runtime):
        created = await provisioner.create(SESSION_ID)

        await gateway.exec(SESSION_ID, "npm run dev", background=True)
        runtime.listening_port = 49200
        await asyncio.sleep(0.1)

        assert created.session.exposed_port == 49200
        await gateway.close()
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_read_log(self, gateway, provisioner):
        await provisioner.create(SESSION_ID)
        result = await gateway.exec(SESSION_ID, "npm run dev", background=True)

        content = await gateway.read_log(SESSION_ID, result.pid)

        assert content == "server listening\n"
        await gateway.close()
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_read_log_unknown_pid(self, gateway, provisioner):
        await provisioner.create(SESSION_ID)
        with pytest.raises(ProcessNotFoundError):
            await gateway.read_log(SESSION_ID, 99999)
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_stop_process_forgets_it(self, gateway, provisioner):
        created = await provisioner.create(SESSION_ID)
        result = await gateway.exec(SESSION_ID, "npm run dev", background=True)

        assert await gateway.stop_process(SESSION_ID, result.pid) is True
        assert result.pid not in created.session.processes
        await gateway.close()
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_processes_die_with_session(self, gateway, provisioner):
        created = await provisioner.create(SESSION_ID)
        await gateway.exec(SESSION_ID, "npm run dev", background=True)

        await provisioner.destroy(SESSION_ID)

        assert created.session.processes == {}
        await gateway.close()


# ---------------------------------------------------------------------------
# Install
# ---------------------------------------------------------------------------


class TestInstall:
    @pytest.mark.asyncio
    async def test_node_uses_npm(self, gateway, provisioner, runtime):
        await provisioner.create(SESSION_ID, ProjectKind.NODE)

        result = await gateway.install(SESSION_ID, ["express", "@types/node@20"])

        command, timeout = runtime.commands[-1]
        assert result.exit_code == 0
        assert "npm init -y" in command
        assert command.endswith("npm install --no-fund --no-audit express @types/node@20")
        assert timeout == 300
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_python_uses_pip(self, gateway, provisioner, runtime):
        await provisioner.create(SESSION_ID, ProjectKind.PYTHON)

        await gateway.install(SESSION_ID, ["flask==3.0.0"])

        assert runtime.commands[-1][0].startswith("pip install")
        assert "flask==3.0.0" in runtime.commands[-1][0]
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    async def test_static_has_no_package_manager(self, gateway, provisioner):
        await provisioner.create(SESSION_ID, ProjectKind.STATIC)
        with pytest.raises(InvalidRequestError):
            await gateway.install(SESSION_ID, ["lodash"])
        provisioner.timers.cancel_all()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("packages", [[], ["express; rm -rf /"], ["$(whoami)"], ["-g"]])
    async def test_rejects_bad_package_names(self, gateway, provisioner, runtime, packages):
        await provisioner.create(SESSION_ID)
        with pytest.raises(InvalidRequestError):
            await gateway.install(SESSION_ID, packages)
        assert runtime.commands == []
        provisioner.timers.cancel_all()
