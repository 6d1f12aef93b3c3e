from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from conftest import ANAT_NAME, FUNC_NAME, MASK_NAME, SESSION, SUBJECT, FakeRunner, write_nifti
import screg.cli as cli
from screg.layout import SessionLayout, provision_directories

FLAGS = [
    ("-f", "./BIDS", "Folder not specified"),
    ("-s", SUBJECT, "Subject not specified"),
    ("-x", SESSION, "Session not specified"),
    ("-a", ANAT_NAME, "Anatomical Image not specified"),
    ("-b", FUNC_NAME, "Functional Image not specified"),
    ("-m", "~/masks", "Functional Mask Directory not specified"),
    ("-k", MASK_NAME, "Functional Mask not specified"),
]


def _argv(skip: str | None = None) -> list[str]:
    argv: list[str] = []
    for flag, value, _ in FLAGS:
        if flag != skip:
            argv.extend([flag, value])
    return argv


@pytest.mark.parametrize("flag,message", [(flag, message) for flag, _, message in FLAGS])
def test_missing_argument_exits_1_with_message(flag, message, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)

    rc = cli.main(_argv(skip=flag))

    out = capsys.readouterr().out
    assert rc == 1
    assert f"ERROR: {message}. Exit program." in out
    assert not (tmp_path / "BIDS").exists()


def test_no_arguments_prints_usage(capsys):
    assert cli.main([]) == 1
    assert "MANDATORY ARGUMENTS" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [["-h"], _argv() + ["-h"], ["-h", "-f", "./BIDS"]])
def test_help_prints_usage_and_exits_1(argv, capsys):
    assert cli.main(argv) == 1
    assert "USAGE" in capsys.readouterr().out


def test_unknown_flag_prints_usage(capsys):
    assert cli.main(_argv() + ["-z", "1"]) == 1
    assert "USAGE" in capsys.readouterr().out


def test_half_crop_bounds_rejected(capsys):
    assert cli.main(_argv() + ["--inferior", "5"]) == 1
    assert "--inferior and --superior must be given together" in capsys.readouterr().err


def test_all_arguments_pass_validation(tmp_path, monkeypatch, pam50_dir, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "CommandRunner", FakeRunner)

    rc = cli.main(_argv() + ["--no-viewer", "--inferior", "5", "--superior", "45"])

    captured = capsys.readouterr()
    assert rc == 1
    assert "not specified" not in captured.out
    assert "Source session not found" in captured.err


def test_scenario_with_typed_crop_bounds(bids_root, mask_dir, pam50_dir, tmp_path, monkeypatch, capsys):
    runners: list[FakeRunner] = []

    def make_runner():
        runner = FakeRunner()
        runners.append(runner)
        return runner

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setattr(cli, "CommandRunner", make_runner)
    monkeypatch.setattr("sys.stdin", io.StringIO("5\n45\n"))

    rc = cli.main(_argv())

    assert rc == 0
    func_dir = tmp_path / "BIDS" / "derivatives" / SUBJECT / f"ses-{SESSION}" / "func"
    assert (func_dir / "label" / "template").is_dir()
    assert (func_dir / "func_mean.nii.gz").exists()
    assert (func_dir / "funcmask.nii.gz").exists()

    runner = runners[0]
    assert runner.find("fslroi")[-2:] == ["5", "40"]
    # Crop selection viewer and the final overlay run in the background.
    assert len(runner.launched) == 2
    assert runner.launched[0][0] == "fsleyes"
    assert runner.launched[-1][-2:] == ["-a", "50.0"]
    assert sum(1 for cmd in runner.commands if cmd[0] == "fsleyes") == 4

    out = capsys.readouterr().out
    assert "Enter the inferior slice number" in out
    assert '"status": "PASS"' in out


def test_alias_flags_are_accepted(bids_root, mask_dir, pam50_dir, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "CommandRunner", FakeRunner)
    argv = [
        "-f", str(bids_root),
        "-s", SUBJECT,
        "-x", SESSION,
        "-T", ANAT_NAME,
        "-F", FUNC_NAME,
        "-m", str(mask_dir),
        "-k", MASK_NAME,
        "--no-viewer", "--inferior", "5", "--superior", "45",
    ]

    assert cli.main(argv) == 0


def test_failed_step_exit_code(bids_root, mask_dir, pam50_dir, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "CommandRunner", lambda: FakeRunner(fail_on={"sct_register_to_template"}))
    argv = [
        "-f", str(bids_root), "-s", SUBJECT, "-x", SESSION, "-a", ANAT_NAME, "-b", FUNC_NAME,
        "-m", str(mask_dir), "-k", MASK_NAME, "--no-viewer", "--inferior", "5", "--superior", "45",
    ]

    assert cli.main(argv) == 1
    assert "Step A.7 (register_to_template) failed" in capsys.readouterr().err


def test_check_env_reports_status(monkeypatch, capsys):
    import screg.environment as env

    monkeypatch.setattr(env, "which", lambda cmd: f"/usr/bin/{cmd}")
    monkeypatch.setattr(env, "run_command", lambda cmd: (True, "SCT 7.1"))
    monkeypatch.setattr(env, "_check_pam50_path", lambda sct_dir=None: (True, "PAM50 templates available.", "/tmp/PAM50"))

    rc = cli.main(["--check-env"])

    payload = json.loads(capsys.readouterr().out)
    assert rc == 0
    assert payload["status"] == "PASS"


def test_bad_policy_is_reported(tmp_path, capsys):
    policy = tmp_path / "policy.yaml"
    policy.write_text("version: one\n", encoding="utf-8")

    assert cli.main(_argv() + ["--policy", str(policy)]) == 1
    assert "missing integer 'version'" in capsys.readouterr().err


def test_missing_sct_dir_is_reported(bids_root, mask_dir, pam50_dir, tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "CommandRunner", FakeRunner)
    argv = [
        "-f", str(bids_root), "-s", SUBJECT, "-x", SESSION, "-a", ANAT_NAME, "-b", FUNC_NAME,
        "-m", str(mask_dir), "-k", MASK_NAME, "--no-viewer", "--inferior", "5", "--superior", "45",
        "--sct-dir", str(tmp_path / "no_such_sct"),
    ]

    assert cli.main(argv) == 1
    assert "PAM50 templates not found under" in capsys.readouterr().err
    assert not (bids_root / "derivatives" / SUBJECT).exists()


def test_resume_at_crop_with_preset_bounds(bids_root, mask_dir, pam50_dir, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "CommandRunner", FakeRunner)
    provision_directories(SessionLayout(bids_root.resolve(), SUBJECT, SESSION))
    write_nifti(bids_root / "derivatives" / SUBJECT / f"ses-{SESSION}" / "anat" / "anat.nii.gz", (8, 8, 50))
    argv = [
        "-f", str(bids_root), "-s", SUBJECT, "-x", SESSION, "-a", ANAT_NAME, "-b", FUNC_NAME,
        "-m", str(mask_dir), "-k", MASK_NAME, "--no-viewer", "--inferior", "5", "--superior", "45",
        "--start-at", "A.3",
    ]

    assert cli.main(argv) == 0
