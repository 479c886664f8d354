"""Local server and model asset checks, with optional download and install."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path

import httpx

from auto_extract.config import Settings
from auto_extract.runtime.errors import LocalRuntimeError

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK_BYTES = 1 << 20
_EXECUTABLE_MODE = 0o755


def file_exists_and_non_empty(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


async def download_to_file(url: str, destination: Path, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
    """Stream ``url`` to a temporary sibling file and atomically move it into place."""

    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(destination.name + ".tmp")
    try:
        async with httpx.AsyncClient(transport=transport, follow_redirects=True, timeout=None) as client:
            async with client.stream("GET", url) as response:
                if response.status_code >= 400:
                    raise LocalRuntimeError(f"Download failed ({response.status_code}) for {url}")
                handle = await asyncio.to_thread(temp_path.open, "wb")
                try:
                    async for chunk in response.aiter_bytes(_DOWNLOAD_CHUNK_BYTES):
                        await asyncio.to_thread(handle.write, chunk)
                finally:
                    await asyncio.to_thread(handle.close)
        if not file_exists_and_non_empty(temp_path):
            raise LocalRuntimeError(f"Downloaded file is empty for {url}")
        temp_path.replace(destination)
    except httpx.HTTPError as exc:
        raise LocalRuntimeError(f"Download failed for {url}: {exc}") from exc
    finally:
        temp_path.unlink(missing_ok=True)


def _extract_archive(archive_path: Path, extract_dir: Path) -> None:
    try:
        with tarfile.open(archive_path, "r:*") as archive:
            if hasattr(tarfile, "data_filter"):
                archive.extractall(extract_dir, filter="data")
            else:
                archive.extractall(extract_dir)
    except tarfile.TarError as exc:
        raise LocalRuntimeError(f"Failed to extract llama.cpp archive: {exc}") from exc


def _find_runtime_dir(extract_dir: Path, binary_name: str) -> Path:
    """Return the directory holding ``binary_name``, preferring the shallowest match."""

    matches = sorted(
        (path for path in extract_dir.rglob(binary_name) if file_exists_and_non_empty(path)),
        key=lambda path: len(path.relative_to(extract_dir).parts),
    )
    if not matches:
        raise LocalRuntimeError(f"Failed to find {binary_name} inside downloaded llama.cpp archive.")
    return matches[0].parent


def _move_runtime_files(runtime_dir: Path, target_dir: Path) -> None:
    target_dir.mkdir(parents=True, exist_ok=True)
    for entry in runtime_dir.iterdir():
        destination = target_dir / entry.name
        if destination.is_dir() and not destination.is_symlink():
            shutil.rmtree(destination)
        elif destination.exists() or destination.is_symlink():
            destination.unlink()
        shutil.move(str(entry), str(destination))


async def install_llama_server(
    server_path: Path,
    release_url: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Path:
    """Download a llama.cpp release archive and install its runtime files next to ``server_path``.

    Every file from the directory that contains the server binary is moved into
    ``server_path.parent`` so shared libraries shipped with the release stay
    beside the executable.
    """

    logger.info("auto_extract.llama_install_started url=%s destination=%s", release_url, server_path.parent)
    with tempfile.TemporaryDirectory(prefix="auto-extract-llama-") as temp_root:
        archive_path = Path(temp_root) / "llama-release.tar.gz"
        extract_dir = Path(temp_root) / "extract"
        extract_dir.mkdir()
        await download_to_file(release_url, archive_path, transport=transport)
        await asyncio.to_thread(_extract_archive, archive_path, extract_dir)
        runtime_dir = _find_runtime_dir(extract_dir, server_path.name)
        await asyncio.to_thread(_move_runtime_files, runtime_dir, server_path.parent)

    if not file_exists_and_non_empty(server_path):
        raise LocalRuntimeError(f"Installed llama-server binary is empty at {server_path}")
    server_path.chmod(_EXECUTABLE_MODE)
    logger.info("auto_extract.llama_install_finished destination=%s", server_path)
    return server_path


async def ensure_local_assets(
    server_path: Path,
    model_path: Path,
    *,
    download_url: str | None = None,
    release_url: str | None = None,
    auto_download: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[Path, Path]:
    """Verify the server binary and model exist, installing or downloading them when allowed."""

    if not file_exists_and_non_empty(server_path):
        if not (auto_download and release_url):
            raise LocalRuntimeError(f"llama-server binary is missing at {server_path}")
        await install_llama_server(server_path, release_url, transport=transport)
    if file_exists_and_non_empty(model_path):
        return server_path, model_path
    if not (auto_download and download_url):
        raise LocalRuntimeError(f"Model file is missing at {model_path}")
    logger.info("auto_extract.model_download_started url=%s destination=%s", download_url, model_path)
    await download_to_file(download_url, model_path, transport=transport)
    logger.info("auto_extract.model_download_finished destination=%s", model_path)
    return server_path, model_path


async def resolve_local_assets(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[Path, Path]:
    return await ensure_local_assets(
        Path(settings.llama_server_path).expanduser(),
        Path(settings.model_path).expanduser(),
        download_url=settings.model_download_url,
        release_url=settings.llama_release_url,
        auto_download=settings.auto_download_model,
        transport=transport,
    )
