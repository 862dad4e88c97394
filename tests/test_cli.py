import json

import pytest
from typer.testing import CliRunner

from ragcore.main import app

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text(
        "chunking:\n  target_chunk_size: 300\n"
        "embedding:\n  provider: hashing\n  backoff_min: 0\n  backoff_max: 0\n"
        "index:\n  vector_mode: exact\n"
        "logging:\n  level: ERROR\n",
        encoding="utf-8",
    )
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "quarto.md").write_text("# Quarto\n\nQuarto supports YAML front matter.\n", encoding="utf-8")
    (docs / "pasta.md").write_text("# Pasta\n\nBoil the pasta in salted water.\n", encoding="utf-8")
    (docs / "broken.md").write_text("# Broken\n\n```\nnever closed\n", encoding="utf-8")
    (docs / "ignored.json").write_text("{}", encoding="utf-8")
    return {"config": str(config), "docs": str(docs), "store": str(tmp_path / "store")}


def _run(*args):
    return runner.invoke(app, [str(a) for a in args])


def _ingested(env):
    assert _run("create", env["store"], "-c", env["config"]).exit_code == 0
    result = _run("ingest", env["store"], env["docs"], "-c", env["config"], "--build")
    assert result.exit_code == 0, result.output
    return result


def test_create_ingest_and_query(cli_env):
    result = _ingested(cli_env)
    assert "2 inserted" in result.output
    assert "broken.md" in result.output

    result = _run("query", cli_env["store"], "YAML front matter", "-c", cli_env["config"],
                  "--method", "bm25", "--json")
    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["method"] == "bm25"
    assert [r["origin"].endswith("quarto.md") for r in data["results"]] == [True]


def test_query_exclusions(cli_env):
    _ingested(cli_env)
    first = json.loads(_run("query", cli_env["store"], "pasta", "-c", cli_env["config"],
                            "-k", "1", "--json").stdout)
    seen = first["results"][0]["chunk_id"]
    second = json.loads(_run("query", cli_env["store"], "pasta", "-c", cli_env["config"],
                             "-k", "5", "--exclude", seen, "--json").stdout)
    assert seen not in [r["chunk_id"] for r in second["results"]]


def test_query_before_build_fails_cleanly(cli_env):
    _run("create", cli_env["store"], "-c", cli_env["config"])
    result = _run("query", cli_env["store"], "anything", "-c", cli_env["config"])
    assert result.exit_code == 1
    assert "IndexNotBuiltError" in result.output


def test_create_twice_fails(cli_env):
    assert _run("create", cli_env["store"], "-c", cli_env["config"]).exit_code == 0
    assert _run("create", cli_env["store"], "-c", cli_env["config"]).exit_code == 1
    assert _run("create", cli_env["store"], "-c", cli_env["config"], "--overwrite").exit_code == 0


def test_status_and_rebuild(cli_env):
    _ingested(cli_env)
    result = _run("build-index", cli_env["store"], "-c", cli_env["config"])
    assert result.exit_code == 0, result.output
    assert "generation 2" in result.output

    result = _run("status", cli_env["store"], "-c", cli_env["config"])
    assert result.exit_code == 0, result.output
    assert "generation 2" in result.output


def test_inspect_no_repeat(cli_env):
    _ingested(cli_env)
    result = runner.invoke(
        app,
        ["inspect", cli_env["store"], "-c", cli_env["config"], "-k", "1", "--no-repeat"],
        input="pasta\npasta\npasta\nexit\n",
    )
    assert result.exit_code == 0, result.output
    assert "No results." in result.output
    assert "Goodbye." in result.output


def test_unknown_method(cli_env):
    _ingested(cli_env)
    result = _run("query", cli_env["store"], "x", "-c", cli_env["config"], "--method", "magic")
    assert result.exit_code == 2
