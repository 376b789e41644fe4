"""Tests for install, outdated parsing and update."""

from __future__ import annotations

import json
import subprocess

import pytest

from nodestart_cli import (
    GeneratorSettings,
    OutdatedPackage,
    StepTracker,
    find_outdated,
    parse_outdated_output,
    parse_outdated_table,
    run_installer,
    update_dependencies,
)


NPM_TABLE = """\
Package     Current  Wanted  Latest  Location                 Depended by
typescript    5.4.5   5.4.5   5.6.3  node_modules/typescript  demo
vitest        1.5.0   1.6.0   2.1.3  node_modules/vitest      demo
"""


def _tracker() -> StepTracker:
    tracker = StepTracker("test")
    for key in ("install", "outdated", "update"):
        tracker.add(key, key)
    return tracker


class TestParseOutdated:

    def test_table_skips_header(self):
        packages = parse_outdated_table(NPM_TABLE)
        assert packages == [
            OutdatedPackage("typescript", "5.4.5", "5.4.5", "5.6.3", "node_modules/typescript"),
            OutdatedPackage("vitest", "1.5.0", "1.6.0", "2.1.3", "node_modules/vitest"),
        ]

    def test_table_with_only_header(self):
        assert parse_outdated_table("Package Current Wanted Latest Location\n") == []

    def test_short_rows_are_padded(self):
        assert parse_outdated_table("header\nzod 3.22.0\n") == [OutdatedPackage("zod", "3.22.0")]

    def test_npm_json(self):
        text = json.dumps({
            "typescript": {"current": "5.4.5", "wanted": "5.4.5", "latest": "5.6.3", "location": "node_modules/typescript"},
        })
        assert parse_outdated_output(text) == [
            OutdatedPackage("typescript", "5.4.5", "5.4.5", "5.6.3", "node_modules/typescript"),
        ]

    def test_npm_json_workspace_list(self):
        text = json.dumps({"tsx": [{"current": "4.7.2", "wanted": "4.7.2", "latest": "4.19.1", "location": "a"},
                                   {"current": "4.7.0", "wanted": "4.7.2", "latest": "4.19.1", "location": "b"}]})
        assert [p.location for p in parse_outdated_output(text)] == ["a", "b"]

    def test_pnpm_json_uses_dependency_type(self):
        text = json.dumps({"zod": {"current": "3.22.0", "latest": "3.23.8", "wanted": "3.23.8", "dependencyType": "dependencies"}})
        assert parse_outdated_output(text) == [OutdatedPackage("zod", "3.22.0", "3.23.8", "3.23.8", "dependencies")]

    def test_yarn_json_lines(self):
        lines = [
            json.dumps({"type": "info", "data": "Color legend"}),
            json.dumps({"type": "table", "data": {
                "head": ["Package", "Current", "Wanted", "Latest", "Package Type", "URL"],
                "body": [["eslint", "8.57.0", "8.57.1", "9.12.0", "devDependencies", "https://eslint.org"]],
            }}),
        ]
        assert parse_outdated_output("\n".join(lines)) == [
            OutdatedPackage("eslint", "8.57.0", "8.57.1", "9.12.0", "devDependencies"),
        ]

    def test_plain_text_falls_back_to_table(self):
        assert len(parse_outdated_output(NPM_TABLE)) == 2

    def test_empty_output(self):
        assert parse_outdated_output("") == []
        assert parse_outdated_output("{}") == []


class TestFindOutdated:

    def test_exit_one_with_output_is_success(self, fake_run, tmp_path):
        fake_run.results[("npm", "outdated")] = (1, json.dumps({"tsx": {"current": "4.7.2", "latest": "4.19.1"}}), "")
        assert [p.name for p in find_outdated(tmp_path, "npm")] == ["tsx"]
        assert fake_run.calls == [["npm", "outdated", "--json"]]

    def test_failure_without_output_raises(self, fake_run, tmp_path):
        fake_run.results[("pnpm", "outdated")] = (1, "", "ERR_PNPM_NO_IMPORTER_MANIFEST_FOUND")
        with pytest.raises(subprocess.CalledProcessError):
            find_outdated(tmp_path, "pnpm")

    def test_pnpm_uses_json_format(self, fake_run, tmp_path):
        fake_run.results[("pnpm", "outdated")] = (0, "{}", "")
        assert find_outdated(tmp_path, "pnpm") == []
        assert fake_run.calls == [["pnpm", "outdated", "--format", "json"]]


class TestRunInstaller:

    def test_installs_and_updates(self, fake_run, tmp_path):
        fake_run.results[("pnpm", "outdated")] = (1, json.dumps({"zod": {"current": "3.22.0", "latest": "3.23.8"}}), "")
        tracker = _tracker()
        assert run_installer(tmp_path, "pnpm", GeneratorSettings(), tracker) is True
        assert fake_run.commands("pnpm", "install") and fake_run.commands("pnpm", "update")
        assert [tracker.status_of(k) for k in ("install", "outdated", "update")] == ["done", "done", "done"]

    def test_nothing_outdated_skips_update(self, fake_run, tmp_path):
        fake_run.results[("npm", "outdated")] = (0, "", "")
        tracker = _tracker()
        assert run_installer(tmp_path, "npm", GeneratorSettings(), tracker) is True
        assert fake_run.commands("npm", "update") == []
        assert tracker.status_of("update") == "skipped"

    def test_install_failure_stops_later_stages(self, fake_run, tmp_path):
        fake_run.results[("yarn", "install")] = (1, "", "network error")
        tracker = _tracker()
        assert run_installer(tmp_path, "yarn", GeneratorSettings(), tracker) is False
        assert fake_run.commands("yarn", "outdated") == []
        assert tracker.status_of("install") == "error"

    def test_outdated_failure_is_not_fatal(self, fake_run, tmp_path):
        fake_run.results[("npm", "outdated")] = (2, "", "boom")
        tracker = _tracker()
        assert run_installer(tmp_path, "npm", GeneratorSettings(), tracker) is True
        assert tracker.status_of("outdated") == "error"
        assert tracker.status_of("update") == "skipped"

    def test_update_failure_is_reported(self, fake_run, tmp_path):
        fake_run.results[("npm", "outdated")] = (1, NPM_TABLE, "")
        fake_run.results[("npm", "update")] = (1, "", "EACCES")
        tracker = _tracker()
        assert run_installer(tmp_path, "npm", GeneratorSettings(), tracker) is False
        assert tracker.status_of("install") == "done"
        assert tracker.status_of("update") == "error"

    def test_update_disabled(self, fake_run, tmp_path):
        tracker = _tracker()
        assert run_installer(tmp_path, "pnpm", GeneratorSettings(update_outdated=False), tracker) is True
        assert [c[1] for c in fake_run.calls] == ["install"]

    def test_commands_run_in_project_directory(self, monkeypatch, tmp_path):
        seen = []

        def record(cmd, **kwargs):
            seen.append(kwargs.get("cwd"))
            return subprocess.CompletedProcess(cmd, 0, "", "")

        monkeypatch.setattr("nodestart_cli.subprocess.run", record)
        run_installer(tmp_path, "npm", GeneratorSettings(), _tracker())
        assert seen and all(cwd == tmp_path for cwd in seen)


class TestUpdateDependencies:

    @pytest.mark.parametrize("pm,expected", [
        ("npm", ["npm", "update"]),
        ("pnpm", ["pnpm", "update"]),
        ("yarn", ["yarn", "upgrade"]),
    ])
    def test_update_command_per_manager(self, fake_run, tmp_path, pm, expected):
        update_dependencies(tmp_path, pm)
        assert fake_run.calls == [expected]

    def test_yarn_run_upgrades_outdated(self, fake_run, tmp_path):
        table = json.dumps({"type": "table", "data": {"head": [], "body": [["zod", "3.22.0", "3.23.8", "3.23.8", "dependencies"]]}})
        fake_run.results[("yarn", "outdated")] = (1, table, "")
        tracker = _tracker()
        assert run_installer(tmp_path, "yarn", GeneratorSettings(), tracker) is True
        assert fake_run.commands("yarn", "upgrade") == [["yarn", "upgrade"]]
        assert fake_run.commands("yarn", "update") == []
