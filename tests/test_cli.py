import json
import os
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from sitever import cli  # noqa: E402

pytestmark = pytest.mark.skipif(os.name == "nt", reason="uses POSIX symlink pointers")


@pytest.fixture
def websites(tmp_path, monkeypatch):
    root = tmp_path / "Websites"
    monkeypatch.setenv("WEBSITES_DIR", str(root))
    for var in ("SITEVER_REGISTRY", "SITEVER_REGISTRY_PATH", "SITEVER_POINTER",
                "SITEVER_LOG_FILE", "SITEVER_PROGRESS", "SITEVER_PLUGIN_PATH",
                "SITEVER_WEBHOOK_URL"):
        monkeypatch.delenv(var, raising=False)
    return root


@pytest.fixture
def out_dir(tmp_path):
    out = tmp_path / "out"
    (out / "assets").mkdir(parents=True)
    (out / "index.html").write_text("<h1>v1</h1>")
    (out / "assets" / "site.css").write_text("h1{}")
    return out


def _ids(websites):
    data = json.loads((websites / ".sitever" / "registry.json").read_text())
    return {v["version_number"]: v["id"] for v in data["versions"]}


def test_cut_list_and_rollback(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    out = capsys.readouterr().out
    assert "Created v1.0" in out
    assert "with 2 files" in out

    (out_dir / "index.html").write_text("<h1>v2</h1>")
    cli.main(["--project", "site-a", "cut", str(out_dir), "--changelog", "new hero"])
    capsys.readouterr()

    current = websites / "site-a" / "current"
    assert (current / "index.html").read_text() == "<h1>v2</h1>"

    ids = _ids(websites)
    cli.main(["--project", "site-a", "rollback", ids["1.0"]])
    out = capsys.readouterr().out
    assert "created v1.2" in out
    assert (current / "index.html").read_text() == "<h1>v1</h1>"

    cli.main(["--project", "site-a", "list"])
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("* v1.2")
    assert lines[1].startswith("  v1.1")
    assert "new hero" in lines[1]


def test_diff_and_verify(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    (out_dir / "about.html").write_text("about")
    cli.main(["--project", "site-a", "cut", str(out_dir)])
    capsys.readouterr()
    ids = _ids(websites)

    cli.main(["--project", "site-a", "diff", ids["1.0"], ids["1.1"]])
    out = capsys.readouterr().out
    assert "File changes in version 1.1" in out
    assert "- Added 1 file" in out

    cli.main(["--project", "site-a", "verify", ids["1.1"]])
    assert "v1.1: OK" in capsys.readouterr().out

    (websites / "site-a" / "versions" / "v1.1" / "about.html").write_text("tampered")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--project", "site-a", "verify", ids["1.1"]])
    assert excinfo.value.code == cli.EXIT_ERROR
    assert "corrupted: about.html" in capsys.readouterr().out


def test_rollback_preview_changes_nothing(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    cli.main(["--project", "site-a", "cut", str(out_dir)])
    capsys.readouterr()
    ids = _ids(websites)

    cli.main(["--project", "site-a", "rollback", ids["1.0"], "--preview"])
    out = capsys.readouterr().out
    assert "Rollback would create v1.2 from v1.0" in out
    assert "kept: v1.1" in out
    assert set(_ids(websites)) == {"1.0", "1.1"}


def test_unknown_version_exit_code(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    capsys.readouterr()

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--project", "site-a", "activate", "version-missing"])
    assert excinfo.value.code == cli.EXIT_ERROR
    assert "Error [VERSION_NOT_FOUND]" in capsys.readouterr().err


def test_foreign_current_is_fatal(websites, out_dir, capsys):
    (websites / "site-a" / "current").mkdir(parents=True)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    assert excinfo.value.code == cli.EXIT_FATAL
    assert "Error [UNEXPECTED_POINTER_STATE]" in capsys.readouterr().err


def test_expect_guard(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial", "--expect", "none"])
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--project", "site-a", "cut", str(out_dir), "--expect", "none"])
    assert excinfo.value.code == cli.EXIT_ERROR
    assert "CONCURRENT_MODIFICATION" in capsys.readouterr().err


def test_orphans_listed_and_removed(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    stray = websites / "site-a" / "versions" / "v1.1"
    stray.mkdir()
    (stray / "index.html").write_text("half written")
    capsys.readouterr()

    cli.main(["--project", "site-a", "orphans"])
    assert capsys.readouterr().out.strip() == "v1.1"

    cli.main(["--project", "site-a", "orphans", "--remove"])
    assert "removed v1.1" in capsys.readouterr().out
    assert not stray.exists()


def test_sqlite_backend(websites, out_dir, monkeypatch, capsys):
    monkeypatch.setenv("SITEVER_REGISTRY", "sqlite")
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    assert (websites / ".sitever" / "registry.db").exists()

    cli.main(["--project", "site-a", "list"])
    assert capsys.readouterr().out.splitlines()[-1].startswith("* v1.0")


def test_show_prints_lineage_and_changes(websites, out_dir, capsys):
    cli.main(["--project", "site-a", "cut", str(out_dir), "--change", "initial"])
    (out_dir / "index.html").write_text("<h1>v2</h1>")
    cli.main(["--project", "site-a", "cut", str(out_dir)])
    ids = _ids(websites)
    cli.main(["--project", "site-a", "rollback", ids["1.0"]])
    capsys.readouterr()

    cli.main(["--project", "site-a", "show", _ids(websites)["1.2"]])
    out = capsys.readouterr().out
    assert "Lineage: v1.2 -> v1.0" in out
    assert "Changes since v1.0: No changes detected" in out

    cli.main(["--project", "site-a", "show", ids["1.1"]])
    out = capsys.readouterr().out
    assert "Lineage" not in out
    assert "Changes since" not in out
