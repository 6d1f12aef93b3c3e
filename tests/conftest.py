from __future__ import annotations

import sys
from pathlib import Path

import nibabel as nib
import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

SUBJECT = "sub-02"
SESSION = "Pilot"
ANAT_NAME = "sub-02_acq-SC_T2w.nii.gz"
FUNC_NAME = "sub-02_task-01_acq-SC_bold.nii.gz"
MASK_NAME = "2a_KJH.nii.gz"


def write_nifti(path: Path, shape, value: float = 1.0) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.full(shape, value, dtype=np.float32)
    nib.save(nib.Nifti1Image(data, np.eye(4)), str(path))
    return path


def _after(cmd: list[str], flag: str) -> Path:
    return Path(cmd[cmd.index(flag) + 1])


class FakeRunner:
    """Records command lines and writes the files each tool would produce."""

    def __init__(self, fail_on=(), skip_outputs=(), empty_outputs=()):
        self.fail_on = set(fail_on)
        self.skip_outputs = set(skip_outputs)
        self.empty_outputs = set(empty_outputs)
        self.commands: list[list[str]] = []
        self.launched: list[list[str]] = []
        self.cwds: list[Path | None] = []

    def run(self, cmd, cwd=None):
        self.commands.append(list(cmd))
        self.cwds.append(cwd)
        tool = cmd[0]
        if tool in self.fail_on:
            return False, f"{tool}: boom"
        if tool not in self.skip_outputs:
            value = 0.0 if tool in self.empty_outputs else 1.0
            for path in self._outputs(cmd):
                write_nifti(path, (4, 4, 4), value)
        return True, ""

    def launch(self, cmd, cwd=None):
        self.launched.append(list(cmd))
        return True, ""

    def tools(self) -> list[str]:
        return [cmd[0] for cmd in self.commands]

    def find(self, tool: str) -> list[str]:
        return next(cmd for cmd in self.commands if cmd[0] == tool)

    @staticmethod
    def _outputs(cmd: list[str]) -> list[Path]:
        tool = cmd[0]
        if tool == "fslroi":
            return [Path(cmd[2])]
        if tool in ("sct_deepseg_sc", "sct_label_utils"):
            return [_after(cmd, "-o")]
        if tool == "fslmaths":
            return [Path(cmd[3])]
        if tool == "sct_register_to_template":
            folder = _after(cmd, "-ofolder")
            return [
                folder / name
                for name in (
                    "warp_template2anat.nii.gz",
                    "warp_anat2template.nii.gz",
                    "template2anat.nii.gz",
                    "anat2template.nii.gz",
                )
            ]
        if tool == "sct_register_multimodal":
            return [_after(cmd, "-o"), _after(cmd, "-owarp"), _after(cmd, "-owarpinv")]
        if tool == "sct_warp_template":
            folder = _after(cmd, "-ofolder") / "template"
            return [folder / name for name in ("PAM50_t2.nii.gz", "PAM50_gm.nii.gz", "PAM50_wm.nii.gz")]
        return []


@pytest.fixture
def bids_root(tmp_path: Path) -> Path:
    root = tmp_path / "BIDS"
    session_dir = root / "sourcedata" / SUBJECT / f"ses-{SESSION}"
    write_nifti(session_dir / "anat" / ANAT_NAME, (8, 8, 50), 100.0)
    write_nifti(session_dir / "func" / FUNC_NAME, (4, 4, 4, 6), 50.0)
    (root / "derivatives").mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def mask_dir(tmp_path: Path) -> Path:
    masks = tmp_path / "masks"
    write_nifti(masks / MASK_NAME, (4, 4, 4))
    return masks


@pytest.fixture
def pam50_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    pam50 = tmp_path / "PAM50"
    for name in ("PAM50_t2.nii.gz", "PAM50_t2s.nii.gz", "PAM50_cord.nii.gz"):
        write_nifti(pam50 / "template" / name, (4, 4, 4))
    monkeypatch.setenv("PAM50_PATH", str(pam50))
    monkeypatch.delenv("SCT_DIR", raising=False)
    return pam50


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
