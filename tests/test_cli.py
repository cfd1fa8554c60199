import gzip

import pytest

import backup_cli
from s3backup import stores
from s3backup.config import GLOBAL_OPTIONS, RESTORE_KEY, SERVICE_OPTIONS, STORE_OPTIONS


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    options = GLOBAL_OPTIONS + (RESTORE_KEY,)
    for table in list(SERVICE_OPTIONS.values()) + list(STORE_OPTIONS.values()):
        options += table
    for option in options:
        monkeypatch.delenv(option.env, raising=False)


def test_help_lists_actions(capsys):
    with pytest.raises(SystemExit) as excinfo:
        backup_cli.main(["--help"])
    assert excinfo.value.code == 0
    output = capsys.readouterr().out
    assert "backup" in output
    assert "restore" in output


def test_no_action_prints_help(capsys):
    backup_cli.main([])
    assert "usage:" in capsys.readouterr().out


def test_unknown_store_is_usage_error():
    with pytest.raises(SystemExit) as excinfo:
        backup_cli.main(["backup", "tarball", "ftp"])
    assert excinfo.value.code == 2


def test_tarball_backup_and_restore_via_filesystem(site_tree, tmp_path, capsys, snapshot):
    vault = tmp_path / "vault"
    backup_cli.main(
        [
            "--savedir",
            str(tmp_path / "staging"),
            "backup",
            "tarball",
            "--tarball-path",
            str(site_tree),
            "--tarball-compress",
            "filesystem",
            "--filesystem-path",
            str(vault),
        ]
    )
    assert "Backup stored as 'site-backup-" in capsys.readouterr().out
    artifacts = list(vault.glob("site-backup-*.tar.gz"))
    assert len(artifacts) == 1

    target = tmp_path / "restored" / "site"
    backup_cli.main(
        [
            "--savedir",
            str(tmp_path / "incoming"),
            "restore",
            "tarball",
            "--tarball-path",
            str(target),
            "filesystem",
            "--filesystem-path",
            str(vault),
            "--key",
            artifacts[0].name,
        ]
    )
    assert "Restored from" in capsys.readouterr().out
    assert snapshot(target) == snapshot(site_tree)


def test_environment_and_config_file(site_tree, tmp_path, monkeypatch):
    config_file = tmp_path / "s3-backup.yaml"
    config_file.write_text(
        f"tarball-path: {tmp_path / 'wrong'}\nfilesystem-path: {tmp_path / 'vault'}\ntarball-compress: false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("CONFIG_FILE", str(config_file))
    monkeypatch.setenv("TARBALL_PATH_SOURCE", str(site_tree))
    monkeypatch.setenv("SAVE_DIR", str(tmp_path / "staging"))

    backup_cli.main(["backup", "tarball", "filesystem"])
    names = [path.name for path in (tmp_path / "vault").iterdir()]
    assert len(names) == 1
    assert names[0].startswith("site-backup-")
    assert names[0].endswith(".tar")


def test_store_alias(site_tree, tmp_path, monkeypatch):
    uploads = []

    class RecordingClient:
        def upload_file(self, filename, bucket, key):
            uploads.append((bucket, key))

    monkeypatch.setattr(stores, "build_s3_client", lambda config: RecordingClient())
    backup_cli.main(
        [
            "--savedir",
            str(tmp_path),
            "backup",
            "tarball",
            "--tarball-path",
            str(site_tree),
            "s3",
            "--s3-bucket",
            "offsite",
        ]
    )
    assert len(uploads) == 1
    assert uploads[0][0] == "offsite"


def test_error_exit_code(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        backup_cli.main(
            [
                "--savedir",
                str(tmp_path),
                "backup",
                "tarball",
                "--tarball-path",
                str(tmp_path / "missing"),
                "filesystem",
                "--filesystem-path",
                str(tmp_path / "vault"),
            ]
        )
    assert excinfo.value.code == 1
    assert "Error:" in capsys.readouterr().err


def test_missing_required_option_exit_code(capsys):
    with pytest.raises(SystemExit) as excinfo:
        backup_cli.main(["backup", "tarball", "filesystem", "--filesystem-path", "/srv"])
    assert excinfo.value.code == 1
    assert "tarball path is not set" in capsys.readouterr().err


@pytest.mark.parametrize("ignore, expected_code", [(True, None), (False, 1)])
def test_restore_exit_code_tolerance(fake_tools, tmp_path, ignore, expected_code):
    fake_tools("mysql", 'cat > /dev/null\necho "warning" >&2\nexit 1')
    vault = tmp_path / "vault"
    vault.mkdir()
    with gzip.open(vault / "shop-backup-20180601100000.sql.gz", "wt") as dump:
        dump.write("SELECT 1;\n")

    argv = ["--savedir", str(tmp_path / "incoming"), "restore", "mysql", "--database-name", "shop"]
    if ignore:
        argv.append("--database-ignore-exit-code")
    argv += ["filesystem", "--filesystem-path", str(vault)]

    if expected_code is None:
        backup_cli.main(argv)
    else:
        with pytest.raises(SystemExit) as excinfo:
            backup_cli.main(argv)
        assert excinfo.value.code == expected_code
