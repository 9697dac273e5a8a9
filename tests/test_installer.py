"""End-to-end tests for run_install against a fake host filesystem."""

from unittest.mock import patch

import pytest
import requests

from zendloader.core.errors import DownloadError, ExtractionError, PreconditionError, ServiceRestartError
from zendloader.core.installer import run_install
from zendloader.managers import php_manager

from conftest import FakeResponse, FakeSession


@pytest.fixture
def systemd():
    """systemctl stand-in: every unit in `active` is running."""
    state = {"active": {"apache2", "lsws-rc"}, "restarted": [], "killed": []}

    def restart(name):
        state["restarted"].append(name)
        return True, f"Service '{name}' restarted."

    def kill(name):
        state["killed"].append(name)
        return True

    with patch("zendloader.core.system_utils.is_service_active", side_effect=lambda n: n in state["active"]), \
            patch("zendloader.core.system_utils.restart_service", side_effect=restart), \
            patch("zendloader.core.system_utils.kill_processes_by_name", side_effect=kill):
        yield state


def directive_lines(ini):
    return [line for line in ini.read_text().splitlines() if line.startswith("zend_extension=")]


def test_installs_for_every_resolved_version(php_host, make_config, archive_bytes, systemd):
    ini_81, ext_81 = php_host.add_apache_version("8.1")
    ini_82, ext_82 = php_host.add_apache_version("8.2", sapi="fpm")
    session = FakeSession(FakeResponse(archive_bytes(["8.1", "8.2"])))

    report = run_install(make_config(stack_overrides=php_host.apache_overrides()), session=session)

    assert report.applied == ["8.1", "8.2"]
    assert report.skipped == []
    assert report.restarted_service == "apache2"
    assert systemd["restarted"] == ["apache2"]
    assert systemd["killed"] == []
    assert directive_lines(ini_81) == [f'zend_extension="{ext_81 / "ioncube_loader_lin_8.1.so"}"']
    assert directive_lines(ini_82) == [f'zend_extension="{ext_82 / "ioncube_loader_lin_8.2.so"}"']


def test_rerun_is_idempotent(php_host, make_config, archive_bytes, systemd):
    ini, _ = php_host.add_apache_version("8.2")
    installer_config = make_config(versions=["8.2"], stack_overrides=php_host.apache_overrides())
    body = archive_bytes(["8.2"])

    run_install(installer_config, session=FakeSession(FakeResponse(body)))
    report = run_install(installer_config, session=FakeSession(FakeResponse(body)))

    assert len(directive_lines(ini)) == 1
    target = report.get("8.2")
    assert target.state == php_manager.STATE_APPLIED
    assert target.directive_added is False


def test_unresolved_versions_are_skipped_untouched(php_host, make_config, archive_bytes, systemd):
    ini_80, ext_80 = php_host.add_apache_version("8.0", with_binary=False)
    ini_82, _ = php_host.add_apache_version("8.2")
    before = ini_80.read_text()
    session = FakeSession(FakeResponse(archive_bytes(["7.4", "8.0", "8.2"])))

    report = run_install(make_config(versions=["7.4", "8.0", "8.2"],
                                     stack_overrides=php_host.apache_overrides()), session=session)

    assert report.skipped == ["7.4", "8.0"]
    assert report.applied == ["8.2"]
    assert ini_80.read_text() == before
    assert list(ext_80.iterdir()) == []
    assert report.restarted_service == "apache2"


def test_archive_without_version_skips_it(php_host, make_config, archive_bytes, systemd):
    ini, ext_dir = php_host.add_apache_version("8.4")
    session = FakeSession(FakeResponse(archive_bytes(["8.2"])))

    report = run_install(make_config(versions=["8.4"], stack_overrides=php_host.apache_overrides()),
                         session=session)

    assert report.get("8.4").skip_reason == "loader artifact not found"
    assert directive_lines(ini) == []
    assert list(ext_dir.iterdir()) == []


def test_unwritable_ini_does_not_stop_the_run(php_host, make_config, archive_bytes, systemd):
    ini_81, _ = php_host.add_apache_version("8.1")
    ini_82, ext_82 = php_host.add_apache_version("8.2")
    real_ensure = php_manager.ensure_load_directive

    def ensure(ini_path, directive):
        if ini_path == ini_81:
            raise PermissionError(13, "Permission denied", str(ini_path))
        return real_ensure(ini_path, directive)

    session = FakeSession(FakeResponse(archive_bytes(["8.1", "8.2"])))
    with patch("zendloader.managers.php_manager.ensure_load_directive", side_effect=ensure):
        report = run_install(make_config(stack_overrides=php_host.apache_overrides()), session=session)

    assert report.skipped == ["8.1"]
    assert report.get("8.1").skip_reason == "php.ini not writable"
    assert report.applied == ["8.2"]
    assert directive_lines(ini_81) == []
    assert directive_lines(ini_82) == [f'zend_extension="{ext_82 / "ioncube_loader_lin_8.2.so"}"']
    assert systemd["restarted"] == ["apache2"]
    assert report.restarted_service == "apache2"


def test_download_failure_processes_nothing(php_host, make_config, systemd, tmp_path):
    ini, ext_dir = php_host.add_apache_version("8.2")
    session = FakeSession(exc=requests.ConnectionError("no route to host"))

    with pytest.raises(DownloadError):
        run_install(make_config(stack_overrides=php_host.apache_overrides()), session=session)

    assert directive_lines(ini) == []
    assert list(ext_dir.iterdir()) == []
    assert systemd["restarted"] == []
    assert list((tmp_path / "work").iterdir()) == []


def test_corrupt_archive_is_fatal(php_host, make_config, systemd):
    php_host.add_apache_version("8.2")
    session = FakeSession(FakeResponse(b"<html>maintenance</html>"))

    with pytest.raises(ExtractionError):
        run_install(make_config(stack_overrides=php_host.apache_overrides()), session=session)
    assert systemd["restarted"] == []


def test_no_active_service_fails_after_patching(php_host, make_config, archive_bytes, systemd, tmp_path):
    ini, _ = php_host.add_apache_version("8.2")
    systemd["active"] = set()
    session = FakeSession(FakeResponse(archive_bytes(["8.2"])))

    with pytest.raises(ServiceRestartError):
        run_install(make_config(versions=["8.2"], stack_overrides=php_host.apache_overrides()), session=session)

    assert len(directive_lines(ini)) == 1
    assert list((tmp_path / "work").iterdir()) == []


def test_preconditions_checked_before_download(make_config):
    session = FakeSession(FakeResponse(b""))
    with patch("zendloader.core.system_utils.is_running_as_root", return_value=False):
        with pytest.raises(PreconditionError):
            run_install(make_config(require_root=True), session=session)
    assert session.requested == []


def test_openlitespeed_run(php_host, make_config, archive_bytes, systemd):
    ini, ext_dir = php_host.add_lsphp_version("8.3")
    session = FakeSession(FakeResponse(archive_bytes(["8.2", "8.3"])))

    report = run_install(make_config(stack="openlitespeed", versions=["8.2", "8.3"],
                                     stack_overrides=php_host.lsphp_overrides()), session=session)

    assert report.applied == ["8.3"]
    assert report.get("8.2").skip_reason == "php binary not found"
    assert directive_lines(ini) == [f'zend_extension="{ext_dir / "ioncube_loader_lin_8.3.so"}"']
    assert systemd["restarted"] == ["lsws-rc"]
    assert systemd["killed"] == ["lsphp"]
