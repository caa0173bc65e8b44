import asyncio
import json
import os
import shlex
import socket
import sys

import pytest

from forge.errors import DeploymentFailed, PortUnavailableError, ProcessSpawnFailed
from forge.orchestrator import (
    MODE_NGINX,
    READY_CAVEAT,
    ProcessOrchestrator,
    ReadinessDetector,
    ServerHandle,
    ServerState,
    Toolchain,
    detect_toolchain,
)

PY = sys.executable

READY_SCRIPT = "import sys, time; print('  Local:   http://localhost:' + sys.argv[1]); sys.stdout.flush(); time.sleep(60)"
SILENT_SCRIPT = "import time; time.sleep(60)"
CRASH_SCRIPT = "import sys; print('SyntaxError in App.tsx'); sys.exit(1)"
PORT_RACE_SCRIPT = (
    "import os, sys, time\n"
    "flag = sys.argv[2]\n"
    "if not os.path.exists(flag):\n"
    "    open(flag, 'w').close()\n"
    "    print('Error: listen EADDRINUSE: address already in use')\n"
    "    sys.exit(1)\n"
    "print('Local: http://localhost:' + sys.argv[1])\n"
    "sys.stdout.flush()\n"
    "time.sleep(60)\n"
)
PID_SCRIPT = "import os, sys, time; open(sys.argv[-1], 'w').write(str(os.getpid())); time.sleep(60)"
OK = [PY, "-c", "pass"]
FAIL = [PY, "-c", "import sys; sys.exit(1)"]


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _toolchain(script, *extra_args, timeout=10.0, install=OK, build=OK):
    return Toolchain(
        name="vite",
        base_port=_free_port(),
        ready_markers=["Local:"],
        ready_timeout=timeout,
        dev_command=[PY, "-u", "-c", script, "{port}", *extra_args],
        install_command=list(install),
        build_command=list(build),
    )


def _orchestrator(settings, toolchain):
    return ProcessOrchestrator(settings, toolchains={"vite": toolchain, "next": toolchain, "static": toolchain})


# ---------------------------------------------------------------
# Development mode
# ---------------------------------------------------------------

async def test_dev_server_ready_on_marker(settings, tmp_path):
    tc = _toolchain(READY_SCRIPT)
    orch = _orchestrator(settings, tc)
    handle = await orch.run(str(tmp_path), "demo")
    try:
        assert handle.state == ServerState.READY
        assert handle.caveat is None
        assert handle.port >= tc.base_port
        assert handle.url == f"http://localhost:{handle.port}"
        assert handle.running
    finally:
        await orch.teardown(handle)

    assert handle.state == ServerState.STOPPED
    assert not handle.running


async def test_silent_server_resolves_with_caveat(settings, tmp_path):
    orch = _orchestrator(settings, _toolchain(SILENT_SCRIPT, timeout=0.5))
    handle = await orch.run(str(tmp_path), "demo")
    try:
        assert handle.state == ServerState.READY
        assert handle.caveat == READY_CAVEAT
    finally:
        await orch.teardown(handle)


async def test_server_exiting_before_ready_is_fatal(settings, tmp_path):
    tc = _toolchain(CRASH_SCRIPT)
    orch = _orchestrator(settings, tc)
    handle = ServerHandle(project_id="demo")

    with pytest.raises(ProcessSpawnFailed) as exc:
        await orch.start_dev_server(str(tmp_path), handle, tc)

    assert handle.state == ServerState.FAILED
    assert exc.value.details["exit_code"] == 1
    assert "SyntaxError" in exc.value.details["output"]


async def test_port_taken_between_probe_and_bind_retries_next_port(settings, tmp_path):
    tc = _toolchain(PORT_RACE_SCRIPT, str(tmp_path / "first-attempt"))
    orch = _orchestrator(settings, tc)
    handle = ServerHandle(project_id="demo")

    await orch.start_dev_server(str(tmp_path), handle, tc)
    try:
        assert handle.state == ServerState.READY
        assert handle.port > tc.base_port
    finally:
        await orch.teardown(handle)


async def test_failed_install_is_tolerated(settings, tmp_path):
    orch = _orchestrator(settings, _toolchain(READY_SCRIPT, install=FAIL))
    handle = await orch.run(str(tmp_path), "demo")
    try:
        assert handle.state == ServerState.READY
    finally:
        await orch.teardown(handle)


async def test_missing_package_manager_is_fatal(settings, tmp_path):
    orch = _orchestrator(settings, _toolchain(READY_SCRIPT, install=["/nonexistent/npm", "install"]))
    with pytest.raises(ProcessSpawnFailed):
        await orch.run(str(tmp_path), "demo")


async def _cancel_once_started(task, pid_file):
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    pid = int(pid_file.read_text())
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    return pid


def _alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def test_cancelled_start_kills_server(settings, tmp_path):
    pid_file = tmp_path / "server.pid"
    orch = _orchestrator(settings, _toolchain(PID_SCRIPT, str(pid_file), timeout=30))
    task = asyncio.create_task(orch.run(str(tmp_path), "demo"))

    pid = await _cancel_once_started(task, pid_file)

    assert not _alive(pid)


async def test_cancelled_install_kills_installer(settings, tmp_path):
    pid_file = tmp_path / "install.pid"
    install = [PY, "-c", PID_SCRIPT, str(pid_file)]
    orch = _orchestrator(settings, _toolchain(READY_SCRIPT, install=install))
    task = asyncio.create_task(orch.run(str(tmp_path), "demo"))

    pid = await _cancel_once_started(task, pid_file)

    assert not _alive(pid)


async def test_port_retry_stays_inside_probe_span(settings, tmp_path):
    narrow = settings.model_copy(update={"port_probe_span": 1})
    tc = _toolchain(PORT_RACE_SCRIPT, str(tmp_path / "first-attempt"))
    orch = _orchestrator(narrow, tc)
    handle = ServerHandle(project_id="demo")

    with pytest.raises(PortUnavailableError):
        await orch.start_dev_server(str(tmp_path), handle, tc)

    assert handle.state == ServerState.FAILED


async def test_teardown_is_idempotent(settings, tmp_path):
    orch = _orchestrator(settings, _toolchain(READY_SCRIPT))
    handle = await orch.run(str(tmp_path), "demo")
    await orch.teardown(handle)
    await orch.teardown(handle)
    assert handle.state == ServerState.STOPPED


# ---------------------------------------------------------------
# Nginx mode
# ---------------------------------------------------------------

def _nginx_settings(settings, reload_ok=True):
    code = "pass" if reload_ok else "import sys; sys.exit(2)"
    return settings.model_copy(update={
        "nginx_enabled": True,
        "nginx_reload_command": f"{shlex.quote(PY)} -c {shlex.quote(code)}",
        "deploy_domain": "games.example.com",
    })


async def test_build_failure_serves_project_root(settings, tmp_path):
    project = tmp_path / "proj"
    project.mkdir()
    (project / "index.html").write_text("<html></html>")
    s = _nginx_settings(settings)
    orch = _orchestrator(s, _toolchain(READY_SCRIPT, build=FAIL))

    handle = await orch.run(str(project), "arcade", MODE_NGINX, "Arcade!")

    assert handle.state == ServerState.READY
    assert handle.kind == MODE_NGINX
    assert handle.url == "http://arcade.games.example.com"
    assert handle.caveat
    served = tmp_path / "nginx" / "arcade"
    assert handle.output_dir == str(served)
    assert (served / "index.html").is_file()
    assert "arcade, deployed" in (tmp_path / "deploy-log.txt").read_text()


async def test_build_output_directory_is_deployed(settings, tmp_path):
    project = tmp_path / "proj"
    (project / "dist").mkdir(parents=True)
    (project / "dist" / "bundle.js").write_text("console.log(1)")
    (project / "src.ts").write_text("x")
    orch = _orchestrator(_nginx_settings(settings), _toolchain(READY_SCRIPT))

    handle = await orch.run(str(project), "arcade", MODE_NGINX, "arcade")

    served = tmp_path / "nginx" / "arcade"
    assert (served / "bundle.js").is_file()
    assert not (served / "src.ts").exists()
    assert handle.caveat is None


async def test_reload_failure_raises_and_keeps_files(settings, tmp_path):
    project = tmp_path / "proj"
    (project / "dist").mkdir(parents=True)
    (project / "dist" / "index.html").write_text("<html></html>")
    orch = _orchestrator(_nginx_settings(settings, reload_ok=False), _toolchain(READY_SCRIPT))

    with pytest.raises(DeploymentFailed):
        await orch.run(str(project), "arcade", MODE_NGINX, "arcade")

    assert (tmp_path / "nginx" / "arcade" / "index.html").is_file()
    assert "arcade, failed" in (tmp_path / "deploy-log.txt").read_text()


# ---------------------------------------------------------------
# Pieces
# ---------------------------------------------------------------

def test_readiness_detector():
    detector = ReadinessDetector(["Ready", "Local:"])
    assert detector.detect_ready("  ➜  Local:   http://localhost:5173/")
    assert detector.detect_ready(" ✓ Ready in 2.1s")
    assert not detector.detect_ready("compiling...")


def test_illegal_transition_raises():
    handle = ServerHandle(project_id="x")
    with pytest.raises(ValueError):
        handle.transition(ServerState.READY)
    handle.transition(ServerState.INSTALLING)
    handle.transition(ServerState.STARTING)
    handle.transition(ServerState.READY)
    assert handle.state == ServerState.READY


def test_detect_toolchain(tmp_path):
    assert detect_toolchain(str(tmp_path)) == "static"
    (tmp_path / "package.json").write_text(json.dumps({"devDependencies": {"vite": "^5.4.0"}}))
    assert detect_toolchain(str(tmp_path)) == "vite"
    (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"next": "14.2.0"}}))
    assert detect_toolchain(str(tmp_path)) == "next"


def test_default_base_ports(settings):
    orch = ProcessOrchestrator(settings)
    assert orch.toolchains["vite"].base_port == 5173
    assert orch.toolchains["next"].base_port == 3000
