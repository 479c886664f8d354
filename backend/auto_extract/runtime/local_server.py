"""Lifecycle and request handling for a locally spawned llama.cpp completion server."""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import os
import signal
import socket
import threading
import weakref
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Any

import httpx

from auto_extract.config import Settings
from auto_extract.result import Err, Ok, Result
from auto_extract.runtime.assets import ensure_local_assets
from auto_extract.runtime.errors import LocalRuntimeError

logger = logging.getLogger(__name__)

_OUTPUT_TAIL_LINES = 200
_FAILURE_OUTPUT_CHARS = 600
_SHUTDOWN_GRACE_SECONDS = 5.0
_READER_DRAIN_SECONDS = 1.0

# Substrings (lower-cased) that identify a GPU/Metal/Vulkan backend initialization failure.
ACCELERATION_FAILURE_SIGNATURES: tuple[str, ...] = (
    "ggml_metal_init",
    "failed to initialize metal",
    "failed to allocate metal",
    "mtlcommandqueue",
    "command queue",
    "failed to create device",
    "failed to initialize backend",
    "backend init",
    "vk::",
    "vulkan",
    "cuda error",
)

# Ordered startup attempts; later entries run only after an acceleration failure.
STARTUP_POLICY: tuple[tuple[str, bool], ...] = (
    ("gpu", True),
    ("cpu", False),
)


@dataclass(frozen=True, slots=True)
class LocalRuntimeConfig:
    server_path: Path
    model_path: Path
    context_size: int = 4096
    n_predict: int = 1024
    startup_timeout_seconds: float = 60.0
    request_timeout_seconds: float = 45.0
    health_interval_seconds: float = 0.25
    thread_reserve: int = 2
    host: str = "127.0.0.1"
    model_download_url: str | None = None
    llama_release_url: str | None = None
    auto_download_model: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalRuntimeConfig:
        return cls(
            server_path=Path(settings.llama_server_path).expanduser(),
            model_path=Path(settings.model_path).expanduser(),
            context_size=settings.local_context_size,
            n_predict=settings.local_n_predict,
            startup_timeout_seconds=settings.local_startup_timeout_seconds,
            request_timeout_seconds=settings.local_request_timeout_seconds,
            health_interval_seconds=settings.local_health_interval_seconds,
            thread_reserve=settings.local_thread_reserve,
            model_download_url=settings.model_download_url,
            llama_release_url=settings.llama_release_url,
            auto_download_model=settings.auto_download_model,
        )


@dataclass(frozen=True, slots=True)
class StartupFailure:
    reason: str
    output: str = ""

    @property
    def acceleration_failure(self) -> bool:
        return is_acceleration_failure(f"{self.reason}\n{self.output}")


@dataclass(slots=True)
class ServerHandle:
    """A live server process and the address it listens on."""

    process: Any
    base_url: str
    server_mode: str
    output: deque[str] = field(default_factory=lambda: deque(maxlen=_OUTPUT_TAIL_LINES))
    readers: list[asyncio.Task[None]] = field(default_factory=list)


def allocate_port(host: str = "127.0.0.1") -> int:
    """Bind an ephemeral listener, read its port, and release it."""

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


def default_thread_count(reserve: int = 2) -> int:
    return max(1, (os.cpu_count() or 1) - reserve)


def is_acceleration_failure(output: str) -> bool:
    lowered = output.lower()
    return any(signature in lowered for signature in ACCELERATION_FAILURE_SIGNATURES)


def extract_completion_text(payload: Any) -> str | None:
    """Pull generated text from a ``content`` envelope or an OpenAI-style ``choices`` envelope."""

    if not isinstance(payload, dict):
        return None
    content = payload.get("content")
    if isinstance(content, str):
        return content
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    if isinstance(choice.get("text"), str):
        return choice["text"]
    message = choice.get("message")
    if not isinstance(message, dict):
        return None
    message_content = message.get("content")
    if isinstance(message_content, str):
        return message_content
    if isinstance(message_content, list):
        parts = []
        for part in message_content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return None


class LlamaServerRuntime:
    """Owns at most one live llama-server process.

    ``start()`` is memoized: every caller that arrives before startup finishes
    awaits the same attempt, and its outcome (success or failure) is kept until
    ``stop()`` resets it.
    """

    def __init__(
        self,
        config: LocalRuntimeConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._startup: asyncio.Future[Result[ServerHandle, StartupFailure]] | None = None
        self._process: Any = None

    @property
    def server_mode(self) -> str:
        if self._startup is None or not self._startup.done() or self._startup.cancelled():
            return "unstarted"
        result = self._startup.result()
        return result.value.server_mode if isinstance(result, Ok) else "failed"

    def is_ready(self) -> bool:
        if self._startup is None or not self._startup.done() or self._startup.cancelled():
            return False
        result = self._startup.result()
        return isinstance(result, Ok) and result.value.process.returncode is None

    async def start(self) -> ServerHandle:
        if self._startup is None:
            self._startup = asyncio.ensure_future(self._start_with_fallback())
            _LIVE_RUNTIMES.add(self)
            _register_exit_hooks()
        result = await asyncio.shield(self._startup)
        if isinstance(result, Err):
            raise LocalRuntimeError(result.error.reason)
        return result.value

    async def stop(self) -> None:
        startup, self._startup = self._startup, None
        if startup is None:
            return
        if not startup.done():
            startup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await startup
            return
        if startup.cancelled():
            return
        result = startup.result()
        if isinstance(result, Ok):
            await _terminate(result.value)
            logger.info("auto_extract.local_server_stopped base_url=%s", result.value.base_url)
        self._process = None

    def kill_now(self) -> None:
        """Synchronously signal the child process; used from exit and signal handlers."""

        process = self._process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.kill(process.pid, signal.SIGTERM)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        n_predict: int | None = None,
        temperature: float = 0.0,
    ) -> str:
        """Generate text, preferring the chat endpoint and falling back to ``/completion``."""

        handle = await self.start()
        timeout = self.config.request_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._request_completion(
                    handle,
                    system_prompt,
                    user_prompt,
                    n_predict=n_predict or self.config.n_predict,
                    temperature=temperature,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LocalRuntimeError(f"Local completion timed out after {timeout:.0f}s") from exc

    async def _request_completion(
        self,
        handle: ServerHandle,
        system_prompt: str,
        user_prompt: str,
        *,
        n_predict: int,
        temperature: float,
    ) -> str:
        async with httpx.AsyncClient(base_url=handle.base_url, transport=self._transport, timeout=None) as client:
            try:
                response = await client.post(
                    "/v1/chat/completions",
                    json={
                        "model": "local",
                        "messages": [
                            {"role": "system", "content": system_prompt},
                            {"role": "user", "content": user_prompt},
                        ],
                        "max_tokens": n_predict,
                        "temperature": temperature,
                        "response_format": {"type": "json_object"},
                    },
                )
                response.raise_for_status()
                text = extract_completion_text(response.json())
                if text is not None:
                    return text
                logger.warning("auto_extract.local_chat_fallback reason=empty_envelope")
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("auto_extract.local_chat_fallback reason=%s", exc)

            try:
                response = await client.post(
                    "/completion",
                    json={
                        "prompt": f"{system_prompt}\n\n{user_prompt}",
                        "n_predict": n_predict,
                        "temperature": temperature,
                        "stream": False,
                    },
                )
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPStatusError as exc:
                raise LocalRuntimeError(
                    f"Local completion HTTP {exc.response.status_code}: {exc.response.text[:_FAILURE_OUTPUT_CHARS]}"
                ) from exc
            except (httpx.HTTPError, ValueError) as exc:
                raise LocalRuntimeError(f"Local completion request failed: {exc}") from exc

        text = extract_completion_text(payload)
        if text is None:
            raise LocalRuntimeError("Local completion response did not contain generated text.")
        return text

    async def _start_with_fallback(self) -> Result[ServerHandle, StartupFailure]:
        try:
            await ensure_local_assets(
                self.config.server_path,
                self.config.model_path,
                download_url=self.config.model_download_url,
                release_url=self.config.llama_release_url,
                auto_download=self.config.auto_download_model,
                transport=self._transport,
            )
        except LocalRuntimeError as exc:
            return Err(StartupFailure(str(exc)))

        failure: StartupFailure | None = None
        for mode, use_gpu in STARTUP_POLICY:
            if failure is not None and not failure.acceleration_failure:
                break
            result = await self._launch(mode=mode, use_gpu=use_gpu)
            if isinstance(result, Ok):
                return result
            failure = result.error
            logger.warning(
                "auto_extract.local_server_start_failed mode=%s acceleration_failure=%s reason=%s",
                mode,
                failure.acceleration_failure,
                failure.reason,
            )
        if failure is None:
            raise LocalRuntimeError("No llama-server startup modes are configured.")
        return Err(failure)

    async def _launch(self, *, mode: str, use_gpu: bool) -> Result[ServerHandle, StartupFailure]:
        config = self.config
        port = allocate_port(config.host)
        args = [
            str(config.server_path),
            "-m",
            str(config.model_path),
            "--host",
            config.host,
            "--port",
            str(port),
            "-c",
            str(config.context_size),
            "-t",
            str(default_thread_count(config.thread_reserve)),
            "-ngl",
            "99" if use_gpu else "0",
        ]
        started = perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return Err(StartupFailure(f"Failed to start llama-server: {exc}"))

        self._process = process
        handle = ServerHandle(process=process, base_url=f"http://{config.host}:{port}", server_mode=mode)
        handle.readers = [
            asyncio.create_task(_drain(process.stdout, handle.output)),
            asyncio.create_task(_drain(process.stderr, handle.output)),
        ]
        try:
            reason = await self._wait_until_healthy(handle)
        except asyncio.CancelledError:
            await _terminate(handle)
            raise
        if reason is not None:
            await _terminate(handle)
            self._process = None
            output = "\n".join(handle.output)
            if output:
                reason = f"{reason}. Output: {output[-_FAILURE_OUTPUT_CHARS:]}"
            return Err(StartupFailure(reason, output))

        logger.info(
            "auto_extract.local_server_ready mode=%s base_url=%s startup_ms=%.2f",
            mode,
            handle.base_url,
            (perf_counter() - started) * 1000.0,
        )
        return Ok(handle)

    async def _wait_until_healthy(self, handle: ServerHandle) -> str | None:
        """Poll ``/health`` until it answers 200; return a failure reason otherwise."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout_seconds
        interval = self.config.health_interval_seconds
        async with httpx.AsyncClient(transport=self._transport, timeout=max(interval * 4, 1.0)) as client:
            while True:
                if handle.process.returncode is not None:
                    return f"llama-server exited with code {handle.process.returncode} before becoming healthy"
                try:
                    response = await client.get(f"{handle.base_url}/health")
                    if response.status_code == 200:
                        return None
                except httpx.HTTPError:
                    pass
                if loop.time() >= deadline:
                    return (
                        f"llama-server did not become healthy within "
                        f"{self.config.startup_timeout_seconds:.0f}s"
                    )
                await asyncio.sleep(interval)


async def _drain(stream: asyncio.StreamReader | None, sink: deque[str]) -> None:
    if stream is None:
        return
    while line := await stream.readline():
        sink.append(line.decode("utf-8", errors="replace").rstrip())


async def _terminate(handle: ServerHandle) -> None:
    process = handle.process
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_SHUTDOWN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
    await _finish_readers(handle)


async def _finish_readers(handle: ServerHandle) -> None:
    """Let the output readers reach EOF so the tail holds everything the child wrote."""

    if not handle.readers:
        return
    _, pending = await asyncio.wait(handle.readers, timeout=_READER_DRAIN_SECONDS)
    for reader in pending:
        reader.cancel()


_LIVE_RUNTIMES: weakref.WeakSet[LlamaServerRuntime] = weakref.WeakSet()
_exit_hooks_registered = False


def _kill_live_servers() -> None:
    for runtime in list(_LIVE_RUNTIMES):
        runtime.kill_now()


def _chain_signal_handler(signum: int, previous: Any) -> None:
    def _handler(received: int, frame: Any) -> None:
        _kill_live_servers()
        if callable(previous):
            previous(received, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(received, signal.SIG_DFL)
            os.kill(os.getpid(), received)

    signal.signal(signum, _handler)


def _register_exit_hooks() -> None:
    """Install process exit and interrupt hooks once per interpreter."""

    global _exit_hooks_registered
    if _exit_hooks_registered:
        return
    _exit_hooks_registered = True
    atexit.register(_kill_live_servers)
    if threading.current_thread() is not threading.main_thread():
        return
    for signum in (signal.SIGINT, signal.SIGTERM):
        _chain_signal_handler(signum, signal.getsignal(signum))
