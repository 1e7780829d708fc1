from __future__ import annotations

import shutil

from guruguru_cache import cli


def test_store_and_restore_via_cli(fixture_tree, assert_fixture_tree, capsys) -> None:
    bucket = str(fixture_tree / "bucket")
    assert cli.main(["store", "deps-v1", "tmp/foo", "tmp/abc/def", "--store-root", bucket]) == 0
    assert "cache stored: deps-v1.tar.gz" in capsys.readouterr().out

    assert cli.main(["store", "deps-v1", "tmp/foo", "--store-root", bucket]) == 0
    assert "cache already exists: deps-v1" in capsys.readouterr().out

    shutil.rmtree(fixture_tree / "tmp")
    assert cli.main(["restore", "deps-v2", "deps-", "--store-root", bucket]) == 0
    assert "cache restored: deps-v1.tar.gz" in capsys.readouterr().out
    assert_fixture_tree(fixture_tree)


def test_restore_miss_exits_zero(tmp_path, capsys) -> None:
    assert cli.main(["restore", "nothing-here", "--store-root", str(tmp_path / "bucket")]) == 0
    assert "no cache is found" in capsys.readouterr().out


def test_template_error_exits_non_zero(tmp_path, capsys) -> None:
    code = cli.main(["store", '{{ checksum "missing" }}', "tmp/foo", "--store-root", str(tmp_path)])
    assert code == 1
    assert "TEMPLATE_FUNCTION_FAILED" in capsys.readouterr().err


def test_configuration_requires_a_store(capsys) -> None:
    assert cli.main(["restore", "deps"]) == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_s3_store_root_without_bucket_is_a_configuration_error(capsys) -> None:
    assert cli.main(["restore", "deps", "--store-root", "s3:///nobucket"]) == 2
    assert "missing bucket" in capsys.readouterr().err


def test_profile_file_supplies_store_root(fixture_tree, capsys) -> None:
    profile = fixture_tree / "cache.yaml"
    profile.write_text(f"store_root: {fixture_tree / 'bucket'}\n", encoding="utf-8")
    assert cli.main(["store", "--profile", str(profile), "deps", "tmp/foo"]) == 0
    assert (fixture_tree / "bucket" / "deps.tar.gz").is_file()
