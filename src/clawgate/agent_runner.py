"""Agent sandbox client — runs one agent turn inside a container.

The sandbox is a black box: JSON ``AgentInput`` on stdin, one JSON
``AgentOutput`` on stdout between the output markers. Before each launch
the host writes read-only snapshots (current tasks, available groups)
into the group's IPC directory for the agent to consult.
"""

from __future__ import annotations

import json
import shutil
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from clawgate.config import Settings, get_settings
from clawgate.errors import FatalStartupError
from clawgate.logger import logger
from clawgate.types import AgentInput, AgentOutput, RegisteredGroup
from clawgate.utils import run_command, write_json_atomic


class AgentRunner(Protocol):
    """Anything that can run one agent turn for a group."""

    async def run(self, group: RegisteredGroup, agent_input: AgentInput) -> AgentOutput: ...


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


def _parse_agent_output(json_str: str) -> AgentOutput:
    data = json.loads(json_str)
    return AgentOutput(
        status=data["status"],
        result=data.get("result"),
        new_session_id=data.get("newSessionId") or data.get("new_session_id"),
        error=data.get("error"),
    )


def parse_final_output(stdout: str) -> AgentOutput:
    """Parse the marker-delimited JSON payload out of container stdout."""
    start_idx = stdout.find(Settings.OUTPUT_START_MARKER)
    end_idx = stdout.find(Settings.OUTPUT_END_MARKER)

    if start_idx != -1 and end_idx != -1 and end_idx > start_idx:
        json_str = stdout[start_idx + len(Settings.OUTPUT_START_MARKER) : end_idx].strip()
    else:
        # Fallback: last non-empty line
        lines = stdout.strip().splitlines()
        json_str = lines[-1] if lines else ""

    try:
        return _parse_agent_output(json_str)
    except (ValueError, KeyError, TypeError) as exc:
        return AgentOutput(status="error", error=f"Failed to parse container output: {exc}")


def build_volume_mounts(group: RegisteredGroup, is_main: bool) -> list[VolumeMount]:
    s = get_settings()
    group_dir = s.groups_dir / group.folder
    group_dir.mkdir(parents=True, exist_ok=True)
    ipc_dir = s.ipc_dir / group.folder
    for sub in ("messages", "tasks", "results"):
        (ipc_dir / sub).mkdir(parents=True, exist_ok=True)
    sessions_dir = s.data_dir / "sessions" / group.folder / ".claude"
    sessions_dir.mkdir(parents=True, exist_ok=True)

    mounts = [
        VolumeMount(str(group_dir), "/workspace/group"),
        VolumeMount(str(ipc_dir), "/workspace/ipc"),
        VolumeMount(str(sessions_dir), "/home/node/.claude"),
    ]
    if is_main:
        mounts.append(VolumeMount(str(s.project_root), "/workspace/project", readonly=True))
    return mounts


def build_container_args(
    mounts: list[VolumeMount], container_name: str, env: dict[str, str] | None = None
) -> list[str]:
    s = get_settings()
    args = [s.container.runtime, "run", "-i", "--rm", "--name", container_name]
    for key, value in (env or {}).items():
        args.extend(["-e", f"{key}={value}"])
    for m in mounts:
        if m.readonly:
            args.extend(
                ["--mount", f"type=bind,source={m.host_path},target={m.container_path},readonly"]
            )
        else:
            args.extend(["-v", f"{m.host_path}:{m.container_path}"])
    args.append(s.container.image)
    return args


def oneshot_container_name(group_folder: str) -> str:
    """Timestamped container name; folder characters Docker rejects become ``-``."""
    safe_name = "".join(
        c if (c.isascii() and c.isalnum()) or c == "-" else "-" for c in group_folder
    )
    return f"clawgate-{safe_name}-{int(time.time() * 1000)}"


class ContainerAgentRunner:
    """Runs the agent in a fresh container per turn."""

    async def run(self, group: RegisteredGroup, agent_input: AgentInput) -> AgentOutput:
        s = get_settings()
        timeout = s.container.timeout
        env: dict[str, str] = {}
        if group.container_config is not None:
            timeout = group.container_config.timeout or timeout
            env = group.container_config.env

        container_name = oneshot_container_name(group.folder)
        args = build_container_args(
            build_volume_mounts(group, agent_input.is_main), container_name, env
        )
        logger.info(
            "Spawning agent container",
            group=group.name,
            container=container_name,
            is_main=agent_input.is_main,
        )

        started = time.monotonic()
        result = await run_command(
            args,
            cwd=s.project_root,
            timeout_seconds=timeout,
            stdin_data=json.dumps(agent_input.to_dict()).encode(),
        )
        duration_ms = (time.monotonic() - started) * 1000

        if result.start_error:
            logger.error("Agent container failed to start", err=result.start_error)
            return AgentOutput(status="error", error=result.start_error)
        if result.timed_out:
            logger.error("Agent container timed out", group=group.name, timeout=timeout)
            return AgentOutput(status="error", error=f"Container timed out after {timeout}s")
        if result.returncode != 0:
            logger.error(
                "Agent container exited with error",
                group=group.name,
                code=result.returncode,
                stderr_tail=result.stderr[-500:],
            )
            return AgentOutput(
                status="error",
                error=f"Container exited with code {result.returncode}: {result.stderr[-200:]}",
            )

        output = parse_final_output(result.stdout)
        logger.info(
            "Agent container completed",
            group=group.name,
            status=output.status,
            duration_ms=round(duration_ms),
            has_result=output.result is not None,
        )
        return output


def ensure_runtime_available() -> None:
    """Fail startup when the container runtime CLI is missing."""
    runtime = get_settings().container.runtime
    if shutil.which(runtime) is None:
        raise FatalStartupError(
            f"Container runtime '{runtime}' not found on PATH. "
            "Agents cannot run without it; install it and restart."
        )


# ---------------------------------------------------------------------------
# Snapshot helpers (written before container launch for the agent to read)
# ---------------------------------------------------------------------------


def write_tasks_snapshot(folder: str, is_main: bool, tasks: list[dict[str, Any]]) -> Path:
    """Write current_tasks.json. The main group sees all tasks, others their own."""
    visible = tasks if is_main else [t for t in tasks if t.get("groupFolder") == folder]
    path = get_settings().ipc_dir / folder / "current_tasks.json"
    write_json_atomic(path, visible, indent=2)
    return path


def write_groups_snapshot(
    folder: str,
    is_main: bool,
    groups: list[dict[str, Any]],
    registered_jids: set[str],
) -> Path:
    """Write available_groups.json. Only the main group can see (and activate) groups."""
    visible = (
        [{**g, "isRegistered": g["jid"] in registered_jids} for g in groups] if is_main else []
    )
    path = get_settings().ipc_dir / folder / "available_groups.json"
    write_json_atomic(
        path,
        {"groups": visible, "lastSync": datetime.now(UTC).isoformat()},
        indent=2,
    )
    return path
