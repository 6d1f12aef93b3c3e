"""
Preflight checks for the external toolchain.

Verifies that the FSL and SCT executables used by the registration steps are
on PATH and that the PAM50 template files can be found.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from shutil import which
from typing import Dict, List, Optional, Tuple

from screg.commands import run_command
from screg.config import resolve_pam50_dir

REQUIRED_COMMANDS = (
    "fsleyes",
    "fslroi",
    "fslmaths",
    "sct_deepseg_sc",
    "sct_label_utils",
    "sct_register_to_template",
    "sct_register_multimodal",
    "sct_warp_template",
)

PAM50_FILES = ("PAM50_t2.nii.gz", "PAM50_t2s.nii.gz", "PAM50_cord.nii.gz")


@dataclass
class EnvCheck:
    name: str
    passed: bool
    message: str
    info: Dict[str, str]

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "info": dict(self.info),
        }


def environment_checks(viewer: str = "fsleyes", sct_dir: Optional[Path] = None) -> List[EnvCheck]:
    checks: List[EnvCheck] = []
    commands = [viewer if name == "fsleyes" else name for name in REQUIRED_COMMANDS]
    for cmd in commands:
        path = which(cmd)
        checks.append(
            EnvCheck(
                name=f"command:{cmd}",
                passed=path is not None,
                message="Command available." if path else f"{cmd} not found on PATH",
                info={"path": path or ""},
            )
        )

    sct_version = _get_sct_version()
    checks.append(
        EnvCheck(
            name="sct_version",
            passed=sct_version is not None,
            message="SCT version detected." if sct_version else "sct_version failed or not found.",
            info={"version": sct_version or ""},
        )
    )

    passed, message, pam50_path = _check_pam50_path(sct_dir)
    checks.append(
        EnvCheck(
            name="pam50_availability",
            passed=passed,
            message=message,
            info={"pam50_path": pam50_path or ""},
        )
    )
    return checks


def overall_status(checks: List[EnvCheck]) -> Tuple[str, Optional[str]]:
    failures = [check for check in checks if not check.passed]
    if failures:
        first = failures[0]
        return "FAIL", f"{first.name} failed: {first.message}"
    return "PASS", None


def _get_sct_version() -> Optional[str]:
    ok, output = run_command(["sct_version"])
    if not ok:
        return None
    return output.splitlines()[0].strip() if output else None


def _check_pam50_path(sct_dir: Optional[Path] = None) -> Tuple[bool, str, Optional[str]]:
    pam50_dir = resolve_pam50_dir(sct_dir)
    if pam50_dir is None:
        return False, "PAM50 templates not found; set SCT_DIR or PAM50_PATH.", None
    missing = [name for name in PAM50_FILES if not (pam50_dir / "template" / name).exists()]
    if missing:
        return False, f"PAM50 template files missing: {', '.join(missing)}", str(pam50_dir)
    return True, "PAM50 templates available.", str(pam50_dir)
