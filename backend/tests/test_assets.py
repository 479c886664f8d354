"""Unit tests for local asset checks and model download."""

from __future__ import annotations

import io
import stat
import tarfile
import tempfile
import unittest
from pathlib import Path

import httpx

from auto_extract.config import Settings
from auto_extract.runtime.assets import ensure_local_assets, install_llama_server, resolve_local_assets
from auto_extract.runtime.errors import LocalRuntimeError

MODEL_URL = "https://models.test/gemma.gguf"
RELEASE_URL = "https://releases.test/llama-b8027-bin-macos-arm64.tar.gz"


def _release_archive(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _serving(routes: dict[str, bytes]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        body = routes.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    return httpx.MockTransport(handler)


class LocalAssetTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.root = Path(temp_dir.name)
        self.server_path = self.root / "llama-server"
        self.server_path.write_bytes(b"#!/bin/sh\n")
        self.model_path = self.root / "models" / "gemma.gguf"

    async def test_existing_assets_are_returned(self) -> None:
        self.model_path.parent.mkdir()
        self.model_path.write_bytes(b"GGUF")

        paths = await ensure_local_assets(self.server_path, self.model_path)

        self.assertEqual(paths, (self.server_path, self.model_path))

    async def test_missing_server_binary_raises(self) -> None:
        with self.assertRaises(LocalRuntimeError) as ctx:
            await ensure_local_assets(self.root / "absent", self.model_path)

        self.assertIn("binary is missing", str(ctx.exception))

    async def test_empty_model_counts_as_missing(self) -> None:
        self.model_path.parent.mkdir()
        self.model_path.write_bytes(b"")

        with self.assertRaises(LocalRuntimeError) as ctx:
            await ensure_local_assets(self.server_path, self.model_path, download_url=MODEL_URL)

        self.assertIn("Model file is missing", str(ctx.exception))

    async def test_model_is_downloaded_when_enabled(self) -> None:
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=b"GGUF-weights")

        await ensure_local_assets(
            self.server_path,
            self.model_path,
            download_url=MODEL_URL,
            auto_download=True,
            transport=httpx.MockTransport(handler),
        )

        self.assertEqual(requested, [MODEL_URL])
        self.assertEqual(self.model_path.read_bytes(), b"GGUF-weights")
        self.assertFalse(self.model_path.with_name("gemma.gguf.tmp").exists())

    async def test_failed_download_leaves_no_partial_file(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, content=b"not here")

        with self.assertRaises(LocalRuntimeError) as ctx:
            await ensure_local_assets(
                self.server_path,
                self.model_path,
                download_url=MODEL_URL,
                auto_download=True,
                transport=httpx.MockTransport(handler),
            )

        self.assertIn("404", str(ctx.exception))
        self.assertFalse(self.model_path.exists())
        self.assertFalse(self.model_path.with_name("gemma.gguf.tmp").exists())

    async def test_resolve_reads_paths_from_settings(self) -> None:
        settings = Settings(
            _env_file=None,
            llama_server_path=self.server_path,
            model_path=self.model_path,
            auto_download_model=False,
        )

        with self.assertRaises(LocalRuntimeError):
            await resolve_local_assets(settings)


class LlamaInstallTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.root = Path(temp_dir.name)
        self.server_path = self.root / "llama" / "llama-server"
        self.model_path = self.root / "model.gguf"
        self.model_path.write_bytes(b"GGUF")

    async def test_missing_binary_is_installed_from_release_archive(self) -> None:
        archive = _release_archive(
            {
                "llama-b8027/llama-server": b"#!/bin/sh\nexit 0\n",
                "llama-b8027/libggml.dylib": b"lib",
            }
        )

        paths = await ensure_local_assets(
            self.server_path,
            self.model_path,
            release_url=RELEASE_URL,
            auto_download=True,
            transport=_serving({RELEASE_URL: archive}),
        )

        self.assertEqual(paths, (self.server_path, self.model_path))
        self.assertEqual(self.server_path.read_bytes(), b"#!/bin/sh\nexit 0\n")
        self.assertTrue(self.server_path.stat().st_mode & stat.S_IXUSR)
        self.assertEqual((self.server_path.parent / "libggml.dylib").read_bytes(), b"lib")

    async def test_binary_is_not_installed_without_auto_download(self) -> None:
        with self.assertRaises(LocalRuntimeError) as ctx:
            await ensure_local_assets(self.server_path, self.model_path, release_url=RELEASE_URL)

        self.assertIn("binary is missing", str(ctx.exception))
        self.assertFalse(self.server_path.parent.exists())

    async def test_archive_without_server_binary_is_rejected(self) -> None:
        archive = _release_archive({"llama-b8027/README.md": b"docs"})

        with self.assertRaises(LocalRuntimeError) as ctx:
            await install_llama_server(self.server_path, RELEASE_URL, transport=_serving({RELEASE_URL: archive}))

        self.assertIn("Failed to find llama-server", str(ctx.exception))
        self.assertFalse(self.server_path.exists())

    async def test_corrupt_archive_is_reported(self) -> None:
        with self.assertRaises(LocalRuntimeError) as ctx:
            await install_llama_server(
                self.server_path,
                RELEASE_URL,
                transport=_serving({RELEASE_URL: b"not a tarball"}),
            )

        self.assertIn("Failed to extract", str(ctx.exception))

    async def test_settings_release_url_drives_install(self) -> None:
        archive = _release_archive({"llama-server": b"binary"})
        settings = Settings(
            _env_file=None,
            llama_server_path=self.server_path,
            model_path=self.model_path,
            llama_release_url=RELEASE_URL,
            auto_download_model=True,
        )

        await resolve_local_assets(settings, transport=_serving({RELEASE_URL: archive}))

        self.assertEqual(self.server_path.read_bytes(), b"binary")


if __name__ == "__main__":
    unittest.main()
