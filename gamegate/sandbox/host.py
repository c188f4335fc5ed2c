from __future__ import annotations

import asyncio
import base64
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gamegate.assets.loader import AssetLoader
from gamegate.assets.registry import BundleManifest, BundleSource
from gamegate.bridge.channel import BridgeChannel
from gamegate.config import SandboxSettings, settings_from_env
from gamegate.errors import BootstrapFault
from gamegate.sandbox.capabilities import CapabilitySet
from gamegate.sandbox.instance import InstanceState, IsolatedInstance

try:
    import resource
except ImportError:  # not POSIX
    resource = None

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_STREAM_LIMIT = 4 * 1024 * 1024
_PASSTHROUGH_ENV = ("LD_LIBRARY_PATH", "SYSTEMROOT")


@dataclass(frozen=True, slots=True)
class ModuleImage:
    """What the host needs to run a module: its source and, for bundles, its resources."""

    game_id: str
    source: str
    bundle: BundleSource | None = None


WRAPPERS = ("auto", "bwrap", "netns", "none")


def resolve_wrapper(requested: str) -> str:
    """The wrapper a child will really run under. Raises instead of falling back to none."""

    if requested not in WRAPPERS:
        raise BootstrapFault(f"Unknown sandbox wrapper {requested!r}")
    if requested == "none":
        return "none"
    if requested in ("auto", "bwrap") and shutil.which("bwrap") is not None:
        return "bwrap"
    if requested in ("auto", "netns") and hasattr(os, "unshare") and hasattr(os, "CLONE_NEWNET"):
        return "netns"
    raise BootstrapFault(f"No network isolation available for sandbox wrapper {requested!r}")


def _limit_child(settings: SandboxSettings, *, netns: bool, limit_procs: bool) -> Callable[[], None] | None:
    if resource is None:
        return None

    def _apply() -> None:
        if netns:
            # Unprivileged: the new user namespace is what permits the empty network one.
            os.unshare(os.CLONE_NEWUSER | os.CLONE_NEWNET)
        # No file writes at all.
        resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))
        resource.setrlimit(resource.RLIMIT_CPU, (settings.cpu_limit_s, settings.cpu_limit_s))
        if limit_procs:
            try:
                resource.setrlimit(resource.RLIMIT_NPROC, (0, 0))
            except (ValueError, OSError):
                pass  # macOS refuses a zero process cap
        try:
            cap = settings.memory_limit_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (cap, cap))
        except (ValueError, OSError):
            pass

    return _apply


def _bwrap_prefix(workdir: Path) -> list[str]:
    wd = str(workdir)
    return [
        "bwrap",
        "--unshare-all",
        "--die-with-parent",
        "--ro-bind", "/", "/",
        "--dev", "/dev",
        "--proc", "/proc",
        "--tmpfs", "/tmp",
        "--bind", wd, wd,
        "--chdir", wd,
        "--",
    ]


class SandboxHost:
    """Stands modules up in child interpreters and tears them down again.

    Each instance gets its own process, its own working directory and its own
    capability snapshot. Nothing is shared between instances.
    """

    def __init__(self, settings: SandboxSettings | None = None) -> None:
        self.settings = settings or SandboxSettings()
        self._instances: dict[str, IsolatedInstance] = {}
        self._by_session: dict[str, str] = {}
        self._failed: deque[IsolatedInstance] = deque(maxlen=32)
        self._lock = asyncio.Lock()
        if self.settings.wrapper == "none":
            logger.warning("sandbox wrapper disabled: module children keep host network access")

    def get(self, instance_id: str) -> IsolatedInstance | None:
        return self._instances.get(instance_id)

    def for_session(self, session_id: str) -> IsolatedInstance | None:
        iid = self._by_session.get(session_id)
        return self._instances.get(iid) if iid else None

    def state_of(self, instance_id: str) -> InstanceState | None:
        inst = self._instances.get(instance_id)
        if inst is not None:
            return inst.state
        for failed in self._failed:
            if failed.instance_id == instance_id:
                return failed.state
        return None

    @property
    def active_count(self) -> int:
        return len(self._instances)

    async def _ship_assets(self, bundle: BundleSource) -> dict[str, Any]:
        manifest = BundleManifest.from_source(bundle)
        outcomes = await AssetLoader(bundle).preload(manifest.resource_paths)
        loaded: dict[str, dict[str, str]] = {}
        missing: list[str] = []
        for o in outcomes:
            if o.ok:
                loaded[o.path] = {"category": o.asset.category.value, "data": base64.b64encode(o.asset.raw).decode("ascii")}
            else:
                logger.warning("asset %s not loaded: %s", o.path, o.error)
                missing.append(o.path)
        return {"loaded": loaded, "missing": missing}

    async def _spawn(self, workdir: Path, wrapper: str) -> asyncio.subprocess.Process:
        argv = [sys.executable, "-B", "-s", "-m", "gamegate.sandbox.runner"]
        if wrapper == "bwrap":
            argv = _bwrap_prefix(workdir) + argv

        env = {"PYTHONPATH": str(_PROJECT_ROOT), "PYTHONIOENCODING": "utf-8"}
        for key in _PASSTHROUGH_ENV:
            if key in os.environ:
                env[key] = os.environ[key]

        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            cwd=str(workdir),
            env=env,
            # bwrap forks its own children; the runner drops NPROC itself once inside.
            preexec_fn=_limit_child(self.settings, netns=wrapper == "netns", limit_procs=wrapper != "bwrap"),
            limit=_STREAM_LIMIT,
        )

    async def instantiate(
        self,
        module: ModuleImage,
        capabilities: Iterable[str] = (),
        *,
        session_id: str | None = None,
        owner_id: str | None = None,
        seed: int | None = None,
    ) -> IsolatedInstance:
        caps = CapabilitySet.build(requested=capabilities, bundle=module.bundle is not None)
        wrapper = resolve_wrapper(self.settings.wrapper)

        async with self._lock:
            if session_id is not None and session_id in self._by_session:
                raise ValueError(f"Session {session_id} already has an active instance")
            if len(self._instances) >= self.settings.max_instances:
                await self.reap_idle()
            if len(self._instances) >= self.settings.max_instances:
                raise BootstrapFault("Sandbox host is at capacity")

            instance_id = str(uuid.uuid4())
            workdir = Path(tempfile.mkdtemp(prefix="gamegate-"))
            try:
                process = await self._spawn(workdir, wrapper)
            except (OSError, subprocess.SubprocessError) as e:
                shutil.rmtree(workdir, ignore_errors=True)
                raise BootstrapFault(f"Could not start sandbox process: {e}") from e

            channel = BridgeChannel(
                reader=process.stdout,
                writer=process.stdin,
                name=instance_id[:8],
                timeout_s=self.settings.call_timeout_s,
            )
            channel.start()
            inst = IsolatedInstance(
                instance_id=instance_id,
                game_id=module.game_id,
                capabilities=caps,
                process=process,
                channel=channel,
                workdir=workdir,
                session_id=session_id,
                owner_id=owner_id,
            )
            self._instances[instance_id] = inst
            if session_id is not None:
                self._by_session[session_id] = instance_id

        boot_args: dict[str, Any] = {
            "source": module.source,
            "capabilities": caps.as_list(),
            "framesPerInput": self.settings.frames_per_input,
            "seed": seed,
        }
        try:
            if module.bundle is not None:
                boot_args["assets"] = await self._ship_assets(module.bundle)
            await inst.bootstrap(boot_args, timeout_s=self.settings.boot_timeout_s)
        except BootstrapFault:
            inst.state = InstanceState.failed
            self._failed.append(inst)
            await self._release(inst)
            logger.warning("bootstrap failed for game %s (instance %s)", module.game_id, instance_id)
            raise
        except Exception as e:
            inst.state = InstanceState.failed
            self._failed.append(inst)
            await self._release(inst)
            logger.exception("bootstrap crashed for game %s (instance %s)", module.game_id, instance_id)
            raise BootstrapFault(f"Bootstrap failed: {e}") from e

        logger.info("instance %s ready for game %s pid=%s caps=%s", instance_id, module.game_id, inst.pid, caps.as_list())
        return inst

    async def _release(self, inst: IsolatedInstance) -> None:
        self._instances.pop(inst.instance_id, None)
        if inst.session_id is not None and self._by_session.get(inst.session_id) == inst.instance_id:
            del self._by_session[inst.session_id]
        await inst.teardown()

    async def destroy(self, instance_id: str) -> bool:
        inst = self._instances.get(instance_id)
        if inst is None:
            return False
        await self._release(inst)
        return True

    async def reap_idle(self, *, now: float | None = None) -> int:
        """Destroy sessionless instances nobody has called for `instance_idle_s`.

        Session instances are left alone; their lifetime belongs to the session.
        """

        now = time.monotonic() if now is None else now
        idle = [
            inst
            for inst in self._instances.values()
            if inst.session_id is None and now - inst.last_used >= self.settings.instance_idle_s
        ]
        for inst in idle:
            logger.info("reaping idle instance %s (game %s)", inst.instance_id, inst.game_id)
            await self._release(inst)
        return len(idle)

    async def shutdown(self) -> None:
        for iid in list(self._instances):
            await self.destroy(iid)


_host: SandboxHost | None = None


def get_host() -> SandboxHost:
    global _host
    if _host is None:
        _host = SandboxHost(settings_from_env().sandbox)
    return _host
