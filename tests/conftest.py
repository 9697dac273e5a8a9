"""Pytest configuration and shared fixtures."""

import io
import os
import tarfile
from pathlib import Path
from typing import Dict, List

import pytest

from zendloader.core import config


PHPINFO_TEMPLATE = """phpinfo()
PHP Version => {version}

System => Linux test 6.1.0 x86_64
Configuration File (php.ini) Path => {ini_dir}
Loaded Configuration File => {ini}
Scan this dir for additional .ini files => (none)
extension_dir => {ext_dir} => {ext_dir}
"""


def build_loader_archive(dest: Path, versions: List[str], subdir: str = "ioncube") -> Path:
    """Writes a .tar.gz shaped like the ionCube loader bundle."""
    with tarfile.open(dest, "w:gz") as tar:
        for version in versions:
            data = f"fake loader for {version}".encode()
            info = tarfile.TarInfo(f"{subdir}/ioncube_loader_lin_{version}.so")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        readme = b"ionCube Loader\n"
        info = tarfile.TarInfo(f"{subdir}/README.txt")
        info.size = len(readme)
        tar.addfile(info, io.BytesIO(readme))
    return dest


def write_php_binary(path: Path, phpinfo: str) -> Path:
    """Creates an executable stand-in for `php -i`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\ncat <<'EOF'\n{phpinfo}EOF\n")
    os.chmod(path, 0o755)
    return path


class FakeRaw:
    """Stand-in for urllib3's HTTPResponse: serves the body exactly as sent."""

    def __init__(self, body: bytes):
        self.body = body
        self.decode_requests = []

    def stream(self, amt=2 ** 16, decode_content=None):
        self.decode_requests.append(decode_content)
        for i in range(0, len(self.body), amt):
            yield self.body[i:i + amt]


class FakeResponse:
    def __init__(self, body: bytes = b"", status_code: int = 200, headers: Dict[str, str] = None):
        self.body = body
        self.status_code = status_code
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}
        self.raw = FakeRaw(body)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    """Serves a fixed response and records requested URLs."""

    def __init__(self, response: FakeResponse = None, exc: Exception = None):
        self.response = response
        self.exc = exc
        self.requested = []

    def get(self, url, stream=False, timeout=None):
        self.requested.append(url)
        if self.exc:
            raise self.exc
        return self.response


@pytest.fixture
def archive_bytes(tmp_path):
    def _build(versions):
        path = build_loader_archive(tmp_path / "loaders.tar.gz", versions)
        return path.read_bytes()
    return _build


@pytest.fixture
def php_host(tmp_path):
    """
    A fake host filesystem rooted under tmp_path. Call `add_apache_version`
    or `add_lsphp_version` to lay out one PHP runtime.
    """

    class PhpHost:
        root = tmp_path / "host"

        def apache_overrides(self):
            return {
                "config_file_templates": [
                    str(self.root / "etc/php/{version}/apache2/php.ini"),
                    str(self.root / "etc/php/{version}/fpm/php.ini"),
                ],
                "php_binary_template": str(self.root / "usr/bin/php{version}"),
            }

        def lsphp_overrides(self):
            return {"php_binary_template": str(self.root / "usr/local/lsws/lsphp{version_nodot}/bin/php")}

        def add_apache_version(self, version, sapi="apache2", ini_content="[PHP]\nmemory_limit = 128M\n",
                               with_binary=True):
            ini = self.root / f"etc/php/{version}/{sapi}/php.ini"
            ini.parent.mkdir(parents=True, exist_ok=True)
            ini.write_text(ini_content)
            ext_dir = self.root / f"usr/lib/php/{version}/ext"
            ext_dir.mkdir(parents=True, exist_ok=True)
            if with_binary:
                cli_ini = self.root / f"etc/php/{version}/cli/php.ini"
                write_php_binary(self.root / f"usr/bin/php{version}", PHPINFO_TEMPLATE.format(
                    version=version, ini_dir=cli_ini.parent, ini=cli_ini, ext_dir=ext_dir))
            return ini, ext_dir

        def add_lsphp_version(self, version, ini_content="[PHP]\n"):
            nodot = version.replace(".", "")
            base = self.root / f"usr/local/lsws/lsphp{nodot}"
            ini = base / "etc/php/php.ini"
            ini.parent.mkdir(parents=True, exist_ok=True)
            ini.write_text(ini_content)
            ext_dir = base / "lib/php/extensions/no-debug-non-zts-20230831"
            ext_dir.mkdir(parents=True, exist_ok=True)
            write_php_binary(base / "bin/php", PHPINFO_TEMPLATE.format(
                version=version, ini_dir=ini.parent, ini=ini, ext_dir=ext_dir))
            return ini, ext_dir

    return PhpHost()


@pytest.fixture
def make_config(tmp_path):
    def _make(stack="apache", versions=None, stack_overrides=None, **kwargs):
        kwargs.setdefault("require_root", False)
        kwargs.setdefault("required_tools", [])
        kwargs.setdefault("temp_parent_dir", tmp_path / "work")
        return config.InstallerConfig(
            stack=stack,
            versions=versions or ["8.1", "8.2"],
            download_url="https://example.invalid/ioncube_loaders_lin_x86-64.tar.gz",
            stack_overrides=stack_overrides,
            **kwargs
        )
    return _make
