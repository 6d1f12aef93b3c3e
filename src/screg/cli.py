"""
sc-registration command line interface.

Registers the anatomical and functional spinal cord images of one
subject/session to the PAM50 template.
"""

from __future__ import annotations

import argparse
import json
import sys
from importlib import metadata
from pathlib import Path
from typing import Optional

from screg.checkpoint import CropBounds, ScriptedCheckpoint, TerminalCheckpoint
from screg.commands import CommandRunner
from screg.config import ConfigError, build_config, load_policy, resolve_pam50_dir, validate_arguments
from screg.environment import environment_checks, overall_status
from screg.pipeline import STEP_ORDER, run_registration

USAGE = """\
DESCRIPTION
  Register anatomical and functional spinal cord images. Note that the file structure must be:
  BIDS folder -> sourcedata & derivatives -> subject -> session -> anat & func
USAGE
  sc-registration -f <folder> -s <subject> -x <session> -a <anatomical> -b <functional> -m <mask directory> -k <mask file>
  # Example: sc-registration -f ./BIDS -s sub-02 -x Pilot -a sub-02_acq-SC_T2w.nii.gz -b sub-02_task-01_acq-SC_bold.nii.gz -m ~/masks -k 2a_KJH.nii.gz
MANDATORY ARGUMENTS
  -f <folder>               BIDS folder
  -s <subject>              Subject Study ID (e.g., sub-HC##)
  -x <session>              Session (e.g., baselinespinalcord)
  -a <anatomical>           Anatomical Image
  -b <functional>           Functional Image
  -m <mask directory>       Mask Directory
  -k <mask>                 Functional Mask
OPTIONAL ARGUMENTS
  --policy <yaml>           Tool parameter policy (default: built-in values)
  --sct-dir <dir>           SCT installation used to locate PAM50 (default: $PAM50_PATH or $SCT_DIR)
  --inferior <n>            Inferior slice for cropping (skips the prompt; needs --superior)
  --superior <n>            Superior slice for cropping (skips the prompt; needs --inferior)
  --no-viewer               Do not open viewer windows (needs --inferior/--superior)
  --start-at <step>         First step to run ({steps})
  --stop-after <step>       Last step to run
  --no-qc                   Do not write sc_registration_qc.json
  --check-env               Check the FSL/SCT installation and exit
  --version                 Print version and exit
""".format(steps=", ".join(STEP_ORDER))


class _UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message: str):  # type: ignore[override]
        raise _UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="sc-registration", add_help=False, allow_abbrev=False)
    parser.add_argument("-h", dest="help", action="store_true")
    parser.add_argument("-f", dest="folder")
    parser.add_argument("-s", dest="subject")
    parser.add_argument("-x", dest="session")
    parser.add_argument("-a", "-T", dest="anat")
    parser.add_argument("-b", "-F", dest="func")
    parser.add_argument("-m", dest="maskdir")
    parser.add_argument("-k", dest="mask")
    parser.add_argument("--policy", type=Path)
    parser.add_argument("--sct-dir", type=Path)
    parser.add_argument("--inferior", type=int)
    parser.add_argument("--superior", type=int)
    parser.add_argument("--no-viewer", action="store_true")
    parser.add_argument("--start-at", choices=STEP_ORDER)
    parser.add_argument("--stop-after", choices=STEP_ORDER)
    parser.add_argument("--no-qc", action="store_true")
    parser.add_argument("--check-env", action="store_true")
    parser.add_argument("--version", action="store_true")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else list(argv)
    if not argv:
        print(USAGE)
        return 1

    try:
        args = build_parser().parse_args(argv)
    except _UsageError:
        print(USAGE)
        return 1

    if args.help:
        print(USAGE)
        return 1

    if args.version:
        try:
            version = metadata.version("screg")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        return 0

    if args.check_env:
        return _check_env(args)

    values = {
        "folder": args.folder,
        "subject": args.subject,
        "session": args.session,
        "anat": args.anat,
        "func": args.func,
        "maskdir": args.maskdir,
        "mask": args.mask,
    }
    try:
        validate_arguments(values)
    except ConfigError as err:
        print(f"ERROR: {err}")
        return 1

    try:
        policy = load_policy(args.policy)
        bounds = _preset_bounds(args.inferior, args.superior)
        pam50_dir = None
        if args.sct_dir is not None:
            pam50_dir = resolve_pam50_dir(args.sct_dir)
            if pam50_dir is None:
                raise ConfigError(f"PAM50 templates not found under {args.sct_dir}")
        config = build_config(
            values,
            policy=policy,
            pam50_dir=pam50_dir,
            start_at=args.start_at,
            stop_after=args.stop_after,
            qc=not args.no_qc,
        )
    except ConfigError as err:
        print(f"ERROR: {err}", file=sys.stderr)
        return 1

    runner = CommandRunner()
    if args.no_viewer:
        checkpoint = ScriptedCheckpoint(
            inferior=bounds.inferior if bounds else None,
            superior=bounds.superior if bounds else None,
        )
    else:
        checkpoint = TerminalCheckpoint(runner, viewer=policy.viewer, bounds=bounds)

    result = run_registration(config, checkpoint, runner)

    # Print a compact summary for humans.
    summary = {
        "status": result.status,
        "failure_message": result.failure_message,
        "qc_path": str(result.qc_path) if result.qc_path else None,
    }
    print(json.dumps(summary, indent=2))
    if result.status != "PASS":
        print(f"ERROR: {result.failure_message}", file=sys.stderr)
        return 1
    return 0


def _preset_bounds(inferior: Optional[int], superior: Optional[int]) -> Optional[CropBounds]:
    if inferior is None and superior is None:
        return None
    if inferior is None or superior is None:
        raise ConfigError("--inferior and --superior must be given together.")
    return CropBounds(inferior=inferior, superior=superior)


def _check_env(args) -> int:
    try:
        policy = load_policy(args.policy)
    except ConfigError as err:
        print(f"ERROR: {err}", file=sys.stderr)
        return 1
    checks = environment_checks(viewer=policy.viewer, sct_dir=args.sct_dir)
    status, failure_message = overall_status(checks)
    payload = {
        "status": status,
        "failure_message": failure_message,
        "checks": [check.as_dict() for check in checks],
    }
    print(json.dumps(payload, indent=2))
    return 0 if status == "PASS" else 1


if __name__ == "__main__":
    sys.exit(main())
