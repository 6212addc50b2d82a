"""Tests for the memgate command line."""

import json
import sys

import pytest

from memgate.main_cli import main

from conftest import MANIFEST, POLICIES, USER


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["memgate", *argv])
    main()


@pytest.fixture
def files(tmp_path):
    manifest = tmp_path / "manifest.json"
    manifest.write_text(json.dumps(MANIFEST))
    policies = tmp_path / "policies.json"
    policies.write_text(json.dumps(POLICIES))
    memory = tmp_path / "memory.json"
    memory.write_text(
        json.dumps(
            {
                "entries": [
                    {"canonicalTypeId": "seatPreference", "value": "Aisle", "ownerUserId": USER},
                    {
                        "canonicalTypeId": "annualSalary",
                        "value": 120000,
                        "ownerUserId": USER,
                        "sensitivity": "confidential",
                    },
                ]
            }
        )
    )
    schema = tmp_path / "schema.json"
    schema.write_text(json.dumps({"seat_pref": "string", "salary": "number"}))
    return {"manifest": manifest, "policies": policies, "memory": memory, "schema": schema, "dir": tmp_path}


def test_no_command_prints_help(monkeypatch, capsys):
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch)
    assert exc.value.code == 0
    assert "memgate" in capsys.readouterr().out


def test_validate_manifest(monkeypatch, capsys, files):
    _run(monkeypatch, "validate-manifest", str(files["manifest"]))
    out = capsys.readouterr().out
    assert "Manifest OK: version=2024-06 types=7" in out
    assert "seatPreference  aliases: seat_pref" in out


def test_validate_manifest_json(monkeypatch, capsys, files):
    _run(monkeypatch, "validate-manifest", str(files["manifest"]), "--json")
    payload = json.loads(capsys.readouterr().out)
    assert payload["version"] == "2024-06"
    assert "seatPreference" in payload["types"]


def test_validate_manifest_invalid(monkeypatch, capsys, files):
    bad = files["dir"] / "bad.json"
    bad.write_text(json.dumps({"capabilities": {"x": {"types": [{"id": ""}]}}}))
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "validate-manifest", str(bad))
    assert exc.value.code == 1
    assert "Invalid manifest document" in capsys.readouterr().err


def test_validate_policies(monkeypatch, capsys, files):
    _run(monkeypatch, "validate-policies", str(files["policies"]))
    out = capsys.readouterr().out
    assert "Policies OK: version=1 policies=3" in out
    assert "hr-bot / payroll_review: finance:read [manual]" in out


def test_validate_policies_unknown_kind(monkeypatch, capsys, files):
    doc = {"policies": [{"agent_id": "a", "intent": "i", "restrictions": [{"name": "r", "kind": "geo_fence"}]}]}
    path = files["dir"] / "unknown.json"
    path.write_text(json.dumps(doc))
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "validate-policies", str(path), "--json")
    assert exc.value.code == 2
    assert json.loads(capsys.readouterr().out)["unknown_kinds"] == ["geo_fence"]


def test_resolve_json(monkeypatch, capsys, files):
    _run(
        monkeypatch,
        "resolve",
        "--memory", str(files["memory"]),
        "--manifest", str(files["manifest"]),
        "--schema", str(files["schema"]),
        "--user-id", USER,
        "--no-semantic",
        "--json",
    )
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "ok"
    assert payload["entries"][0]["value"] == "Aisle"
    assert payload["metadata"]["filtered"] == ["salary"]


def test_resolve_text_with_higher_ceiling(monkeypatch, capsys, files):
    _run(
        monkeypatch,
        "resolve",
        "-m", str(files["memory"]),
        "--manifest", str(files["manifest"]),
        "-s", str(files["schema"]),
        "-u", USER,
        "--max-sensitivity", "confidential",
        "--no-semantic",
    )
    out = capsys.readouterr().out
    assert "Status: ok" in out
    assert "salary <- annualSalary [alias 0.95]" in out
    assert "120000" in out


def test_resolve_nothing_found_exits(monkeypatch, capsys, files):
    schema = files["dir"] / "empty.json"
    schema.write_text(json.dumps({"nothing": "string"}))
    with pytest.raises(SystemExit) as exc:
        _run(
            monkeypatch,
            "resolve",
            "-m", str(files["memory"]),
            "-s", str(schema),
            "-u", USER,
            "--no-semantic",
        )
    assert exc.value.code == 1
    assert "No candidate found for: nothing" in capsys.readouterr().err
