"""Process supervisor: spawns, feeds, lists and kills shell commands.

Central registry for all live child processes of one working
directory. Every spawned command gets a monotonically increasing
integer handle that is never reused.

Per process there are three independent tasks: a stdout reader and a
stderr reader (see output.py) plus one exit-waiter. The exit-waiter is
the only place that removes a handle from the registry and publishes
the terminal event, so both happen exactly once per process.

KILL MODEL:
    SIGTERM to the process group, wait up to the grace period for the
    exit-waiter to confirm, then SIGKILL and wait again. Commands run
    in their own session so grandchildren share the signal.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import threading
from dataclasses import dataclass

from .config import Callback
from .errors import ProcessSpawnError
from .lifecycle import validate_transition
from .models import ManagedProcess, ProcessInfo, ProcessState
from .output import OutputMultiplexer

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Handle -> ManagedProcess map with its own handle counter.

    All access goes through one lock; critical sections never await.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processes: dict[int, ManagedProcess] = {}
        self._last_handle = 0

    def issue_handle(self) -> int:
        with self._lock:
            self._last_handle += 1
            return self._last_handle

    def add(self, managed: ManagedProcess) -> None:
        with self._lock:
            if managed.handle in self._processes:
                raise ValueError(f"Handle {managed.handle} already registered")
            self._processes[managed.handle] = managed

    def get(self, handle: int) -> ManagedProcess | None:
        with self._lock:
            return self._processes.get(handle)

    def remove(self, handle: int) -> ManagedProcess | None:
        """Remove and return the entry, or None if it was already gone."""
        with self._lock:
            return self._processes.pop(handle, None)

    def entries(self) -> list[ManagedProcess]:
        with self._lock:
            return [self._processes[h] for h in sorted(self._processes)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)


@dataclass
class SpawnResult:
    """Handle plus subscription hooks returned by ProcessSupervisor.spawn()."""
    handle: int
    output: OutputMultiplexer

    def on_output(self, callback: Callback) -> None:
        """callback(text) for every decoded chunk from stdout or stderr."""
        self.output.subscribe_output(callback)

    def on_complete(self, callback: Callback) -> None:
        """callback(exit_code, full_output) once, after the process exits."""
        self.output.subscribe_completion(callback)

    def on_error(self, callback: Callback) -> None:
        """callback(exc) once, if the exit status could not be determined."""
        self.output.subscribe_error(callback)

    async def wait(self) -> int:
        """Wait for the process to finish and return its exit code."""
        return await self.output.wait()


class ProcessSupervisor:
    """Owns the live child processes for one working directory."""

    def __init__(
        self,
        work_dir: str,
        *,
        registry: ProcessRegistry | None = None,
        grace_seconds: float = 5.0,
        drain_seconds: float = 2.0,
        input_drain_seconds: float = 1.0,
        shell: str | None = None,
    ) -> None:
        self._work_dir = str(work_dir)
        self._registry = registry if registry is not None else ProcessRegistry()
        self._grace_seconds = grace_seconds
        self._drain_seconds = drain_seconds
        self._input_drain_seconds = input_drain_seconds
        self._shell = shell or shutil.which("bash")

    @property
    def work_dir(self) -> str:
        return self._work_dir

    @property
    def running_count(self) -> int:
        return len(self._registry)

    async def spawn(
        self,
        command: str,
        initial_input: str | None = None,
        *,
        on_output: Callback | None = None,
        on_complete: Callback | None = None,
        on_error: Callback | None = None,
    ) -> SpawnResult:
        """Start *command* under a shell and register it.

        Returns as soon as the process is running; readers start on the
        next loop iteration, so hooks attached to the returned
        SpawnResult before the caller awaits anything see all output.

        Raises:
            ProcessSpawnError: If the shell or working directory is missing.
        """
        handle = self._registry.issue_handle()
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._work_dir,
                start_new_session=True,
                executable=self._shell,
            )
        except OSError as exc:
            logger.error("Spawn #%d failed cwd=%s: %s", handle, self._work_dir, exc)
            raise ProcessSpawnError(command, str(exc)) from exc

        output = OutputMultiplexer(label=f"#{handle}")
        if on_output is not None:
            output.subscribe_output(on_output)
        if on_complete is not None:
            output.subscribe_completion(on_complete)
        if on_error is not None:
            output.subscribe_error(on_error)

        managed = ManagedProcess(
            handle=handle,
            command=command,
            process=proc,
            output=output,
        )
        self._registry.add(managed)
        logger.info(
            "Spawned process #%d pid=%s cwd=%s command=%s",
            handle,
            proc.pid,
            self._work_dir,
            (command[:180] + "...") if len(command) > 180 else command,
        )

        if initial_input is not None:
            self._write_nowait(managed, initial_input)

        output.start(proc.stdout, proc.stderr)
        managed.waiter = asyncio.create_task(
            self._watch_exit(managed), name=f"process-{handle}-exit",
        )
        return SpawnResult(handle=handle, output=output)

    async def send_input(self, handle: int, text: str) -> bool:
        """Write *text* plus a newline to the process's stdin.

        Returns False (never raises) if the handle is unknown or the
        write fails because the process closed its stdin. A child that
        does not read its stdin never blocks the caller for longer than
        the input drain window; unread data stays buffered.
        """
        managed = self._registry.get(handle)
        if managed is None or managed.process.stdin is None:
            return False
        async with managed.stdin_lock:
            stdin = managed.process.stdin
            if stdin.is_closing():
                return False
            try:
                stdin.write((text + "\n").encode("utf-8"))
                await asyncio.wait_for(
                    stdin.drain(), timeout=self._input_drain_seconds,
                )
            except asyncio.TimeoutError:
                logger.debug(
                    "Process #%d is not reading stdin; %d chars left buffered",
                    handle, len(text) + 1,
                )
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.warning("Failed to send input to process #%d: %s", handle, exc)
                return False
        logger.debug("Sent %d chars to process #%d", len(text) + 1, handle)
        return True

    def list(self) -> list[ProcessInfo]:
        """Snapshot of live processes ordered by handle."""
        return [
            ProcessInfo(
                handle=m.handle,
                command=m.command,
                start_time=m.start_time,
                pid=m.pid,
            )
            for m in self._registry.entries()
        ]

    def get(self, handle: int) -> ProcessInfo | None:
        managed = self._registry.get(handle)
        if managed is None:
            return None
        return ProcessInfo(
            handle=managed.handle,
            command=managed.command,
            start_time=managed.start_time,
            pid=managed.pid,
        )

    async def kill(self, handle: int) -> bool:
        """Terminate a process, escalating to SIGKILL after the grace period.

        Returns False if the handle is unknown. Returns True once the
        exit-waiter has confirmed exit and removed the handle.
        """
        managed = self._registry.get(handle)
        if managed is None:
            return False

        self._transition(managed, ProcessState.TERMINATING)
        self._signal_process_group(managed, signal.SIGTERM)
        waiter = managed.waiter
        if waiter is None:
            return True

        done, _ = await asyncio.wait({waiter}, timeout=self._grace_seconds)
        if not done:
            logger.warning(
                "Process #%d pid=%s ignored SIGTERM for %.1fs; sending SIGKILL",
                handle, managed.pid, self._grace_seconds,
            )
            self._signal_process_group(managed, signal.SIGKILL)
            await asyncio.wait({waiter})
        logger.info("Killed process #%d (state=%s)", handle, managed.state.value)
        return True

    def kill_all(self) -> int:
        """Send SIGTERM to every live process without waiting. Shutdown only."""
        signalled = 0
        for managed in self._registry.entries():
            try:
                if self._signal_process_group(managed, signal.SIGTERM):
                    signalled += 1
            except OSError as exc:
                logger.error("Failed to signal process #%d: %s", managed.handle, exc)
        if signalled:
            logger.info("Sent SIGTERM to %d process(es)", signalled)
        return signalled

    # ── Internals ──────────────────────────────────────────────

    async def _watch_exit(self, managed: ManagedProcess) -> None:
        try:
            exit_code = await managed.process.wait()
        except Exception as exc:
            logger.exception("Process #%d: could not determine exit status", managed.handle)
            self._deregister(managed, ProcessState.FAILED)
            await managed.output.drain(0.0)
            await managed.output.fail(exc)
            return

        killed = managed.state == ProcessState.TERMINATING and exit_code < 0
        self._deregister(
            managed, ProcessState.KILLED if killed else ProcessState.EXITED,
        )
        await managed.output.drain(self._drain_seconds)
        logger.info(
            "Process #%d exited code=%s output=%d chars",
            managed.handle, exit_code, len(managed.output.text),
        )
        await managed.output.complete(exit_code)

    def _deregister(self, managed: ManagedProcess, state: ProcessState) -> None:
        self._transition(managed, state)
        if self._registry.remove(managed.handle) is None:
            logger.debug("Process #%d was already deregistered", managed.handle)

    @staticmethod
    def _transition(managed: ManagedProcess, state: ProcessState) -> None:
        try:
            validate_transition(managed.state, state)
        except ValueError:
            logger.debug(
                "Skipping state transition for process #%d: %s -> %s",
                managed.handle, managed.state.value, state.value,
            )
            return
        managed.state = state

    @staticmethod
    def _write_nowait(managed: ManagedProcess, text: str) -> None:
        stdin = managed.process.stdin
        if stdin is None:
            return
        try:
            stdin.write((text + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(
                "Failed to write initial input to process #%d: %s",
                managed.handle, exc,
            )

    @staticmethod
    def _signal_process_group(
        managed: ManagedProcess,
        sig: signal.Signals,
    ) -> bool:
        """Send a signal to the process group when available."""
        proc = managed.process
        if proc.returncode is not None:
            return False
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Group leader already reaped on some platforms; signal the pid.
            try:
                proc.send_signal(sig)
                return True
            except ProcessLookupError:
                return False
