from pathlib import Path
import json
import textwrap

import pytest

from agent_runner.requests import RequestLoadError, load_run_request, parse_run_request


def write_request(path: Path, *, prompt: str) -> None:
    path.write_text(
        textwrap.dedent(
            """
            prompt: {prompt}
            anthropicOAuthToken: oat-token
            allowedTools:
              - Read
              - Edit
            maxTurns: 5
            timeoutMinutes: 15
            cwdRelative: app
            environmentSecrets:
              API_TOKEN: secret
            postExecutionActions:
              git:
                commit: true
                push: true
                branch: develop
                conflictStrategy: fail
            externalTestRepo:
              url: https://github.com/acme/tests
              installationAccessToken: ghs_abc
              existingPrBranch: agent/1
            """
        ).strip().format(prompt=prompt),
        encoding="utf-8",
    )


def test_loader_reads_camel_case_yaml(tmp_path: Path) -> None:
    path = tmp_path / "request.yaml"
    write_request(path, prompt="Fix the failing tests")

    request = load_run_request(path)

    assert request.prompt == "Fix the failing tests"
    assert request.anthropic_oauth_token == "oat-token"
    assert request.allowed_tools == ["Read", "Edit"]
    assert request.post_execution_actions is not None
    git = request.post_execution_actions.git
    assert git is not None
    assert (git.commit, git.push, git.branch, git.conflict_strategy) == (True, True, "develop", "fail")
    assert request.external_test_repo is not None
    assert request.external_test_repo.existing_pr_branch == "agent/1"
    assert request.external_test_repo.branch == "main"


def test_run_options_carry_request_fields(tmp_path: Path) -> None:
    path = tmp_path / "request.yaml"
    write_request(path, prompt="go")

    options = load_run_request(path).run_options(default_timeout_minutes=60)

    assert options.timeout_minutes == 15
    assert options.timeout_seconds == 900
    assert options.max_turns == 5
    assert options.cwd_relative == "app"
    assert options.oauth_token == "oat-token"
    assert options.environment == {"API_TOKEN": "secret"}


def test_loader_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "request.json"
    path.write_text(json.dumps({"prompt": "hello", "gitRepo": "git@github.com:acme/app.git"}), encoding="utf-8")

    request = load_run_request(path)

    assert request.git_repo == "git@github.com:acme/app.git"
    assert request.git_depth == 1
    assert request.run_options(default_timeout_minutes=30).timeout_minutes == 30


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("prompt: '   '\n", encoding="utf-8")

    with pytest.raises(RequestLoadError, match="Prompt must not be empty"):
        load_run_request(path)


def test_loader_reports_syntax_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(RequestLoadError, match="Failed to parse"):
        load_run_request(path)


def test_loader_reports_missing_file(tmp_path: Path) -> None:
    with pytest.raises(RequestLoadError, match="Cannot read"):
        load_run_request(tmp_path / "missing.yaml")


@pytest.mark.parametrize("cwd", ["/etc", "../outside", "app/../../x"])
def test_cwd_relative_must_stay_in_workspace(cwd: str) -> None:
    with pytest.raises(RequestLoadError, match="inside the workspace"):
        parse_run_request({"prompt": "p", "cwdRelative": cwd})


def test_external_repo_requires_https() -> None:
    with pytest.raises(RequestLoadError, match="HTTPS"):
        parse_run_request(
            {
                "prompt": "p",
                "externalTestRepo": {"url": "git@github.com:acme/tests.git", "installationAccessToken": "t"},
            }
        )


def test_non_mapping_document_is_rejected() -> None:
    with pytest.raises(RequestLoadError, match="must be a mapping"):
        parse_run_request(["prompt"])
