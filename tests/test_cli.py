import os
import sys
import json
import yaml

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
import cli


def _config(tmp_path) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "db_path": str(tmp_path / "tracker.db"),
                "backup_dir": str(tmp_path / "backups"),
                "log_level": "WARNING",
            }
        )
    )
    return str(path)


def test_stats_and_verify(tmp_path, capsys):
    config = _config(tmp_path)
    assert cli.main(["--config", config, "stats"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["exercises"] == 8
    assert stats["tags"] == 9

    assert cli.main(["--config", config, "verify"]) == 0
    assert capsys.readouterr().out.strip() == "ok"

    assert cli.main(["--config", config, "optimize", "--vacuum"]) == 0


def test_db_option_overrides_config(tmp_path, capsys):
    config = _config(tmp_path)
    other = str(tmp_path / "other.db")
    assert cli.main(["--config", config, "--db", other, "stats"]) == 0
    assert os.path.exists(other)
    assert not os.path.exists(str(tmp_path / "tracker.db"))


def test_backup_restore_and_export(tmp_path, capsys):
    config = _config(tmp_path)
    out = str(tmp_path / "snapshot.db")
    assert cli.main(["--config", config, "backup", "--out", out]) == 0
    assert capsys.readouterr().out.strip() == out
    assert os.path.exists(out)

    assert cli.main(["--config", config, "restore", "--in", out]) == 0
    capsys.readouterr()

    export_dir = str(tmp_path / "exports")
    assert cli.main(["--config", config, "export", "--fmt", "json", "--out", export_dir]) == 0
    path = capsys.readouterr().out.strip()
    with open(path, encoding="utf-8") as f:
        names = [e["name"] for e in json.load(f)]
    assert "Squat" in names

    assert cli.main(["--config", config, "export", "--out", export_dir]) == 0
    path = capsys.readouterr().out.strip()
    with open(path, encoding="utf-8") as f:
        assert f.readline().strip() == "Date,TimeOfDay,Exercise,Weight,Reps,Warmup,Failure,SetOrder,Notes"


def test_errors_exit_non_zero(tmp_path, capsys):
    config = _config(tmp_path)
    missing = str(tmp_path / "missing.db")
    assert cli.main(["--config", config, "restore", "--in", missing]) == 1
    assert "error: Backup file not found" in capsys.readouterr().err
