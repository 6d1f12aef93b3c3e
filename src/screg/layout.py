"""
Source and derivatives path layout for one subject/session.

Input:  <folder>/sourcedata/<subject>/ses-<session>/{anat,func}/...
Output: <folder>/derivatives/<subject>/ses-<session>/{anat,func}/...
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from screg.config import RegistrationConfig


class ProvisioningError(RuntimeError):
    """Raised when the derivatives tree cannot be set up."""


ANAT = "anat.nii.gz"
ANAT_CROPPED = "anat_cropped.nii.gz"
ANAT_SEG = "anat_cropped_seg.nii.gz"
ANAT_LABELS = "anat_cropped_labels.nii.gz"
WARP_TEMPLATE2ANAT = "warp_template2anat.nii.gz"
WARP_ANAT2TEMPLATE = "warp_anat2template.nii.gz"
TEMPLATE2ANAT = "template2anat.nii.gz"
ANAT2TEMPLATE = "anat2template.nii.gz"

FUNC = "func.nii.gz"
FUNC_MASK = "funcmask.nii.gz"
FUNC_MEAN = "func_mean.nii.gz"
PAM50_T2S_REG = "PAM50_t2s_reg.nii.gz"
WARP_PAM50_T2S2FUNC = "warp_PAM50_t2s2func_mean.nii.gz"
WARP_FUNC2PAM50_T2S = "warp_func2PAM50_t2s.nii.gz"
LABEL_DIR = "label"

QC_NAME = "sc_registration_qc.json"


@dataclass(frozen=True)
class SessionLayout:
    folder: Path
    subject: str
    session: str

    @property
    def session_label(self) -> str:
        return f"ses-{self.session}"

    @property
    def source_session_dir(self) -> Path:
        return self.folder / "sourcedata" / self.subject / self.session_label

    @property
    def source_anat_dir(self) -> Path:
        return self.source_session_dir / "anat"

    @property
    def source_func_dir(self) -> Path:
        return self.source_session_dir / "func"

    @property
    def subject_dir(self) -> Path:
        return self.folder / "derivatives" / self.subject

    @property
    def session_dir(self) -> Path:
        return self.subject_dir / self.session_label

    @property
    def anat_dir(self) -> Path:
        return self.session_dir / "anat"

    @property
    def func_dir(self) -> Path:
        return self.session_dir / "func"

    @property
    def template_dir(self) -> Path:
        """PAM50 template warped into functional space by sct_warp_template."""
        return self.func_dir / LABEL_DIR / "template"

    @property
    def qc_path(self) -> Path:
        return self.session_dir / QC_NAME

    def anat(self, name: str) -> Path:
        return self.anat_dir / name

    def func(self, name: str) -> Path:
        return self.func_dir / name


def layout_for(config: RegistrationConfig) -> SessionLayout:
    # Resolved once so that commands running inside anat/ or func/ see absolute paths.
    return SessionLayout(folder=config.folder.resolve(), subject=config.subject, session=config.session)


def provision_directories(layout: SessionLayout) -> list[Path]:
    """
    Create derivatives/<subject>/ses-<session>/{anat,func} and merge the source
    session tree into it. Existing content is overwritten.

    Returns:
        The derivatives directories that were ensured.

    Raises:
        ProvisioningError: if the source session is missing or a filesystem call fails.
    """
    source = layout.source_session_dir
    if not source.is_dir():
        raise ProvisioningError(f"Source session not found: {source}")

    created = [layout.subject_dir, layout.session_dir, layout.anat_dir, layout.func_dir]
    try:
        for path in created:
            path.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, layout.session_dir, dirs_exist_ok=True)
    except OSError as err:
        raise ProvisioningError(f"Failed to provision {layout.session_dir}: {err}") from err
    return created


def copy_and_rename(source: Path, dest_dir: Path, canonical: str) -> Path:
    """
    Copy `source` into `dest_dir` under its own name, then rename it to `canonical`.

    Raises:
        FileNotFoundError: if `source` does not exist.
    """
    if not source.is_file():
        raise FileNotFoundError(f"Input file not found: {source}")
    dest_dir.mkdir(parents=True, exist_ok=True)
    copied = dest_dir / source.name
    if source.resolve() != copied.resolve():
        shutil.copy2(source, copied)
    target = dest_dir / canonical
    copied.replace(target)
    return target
