"""
Run configuration and tool policy for spinal cord registration.

`RegistrationConfig` is built once from the command line and validated at the
boundary. `RegistrationPolicy` holds the external tool parameters, loaded from
`policy/sc_registration.yaml` when one is given.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

import yaml


class ConfigError(ValueError):
    """Raised when run arguments or the tool policy are invalid."""


# (attribute, label) in the order the arguments are checked.
REQUIRED_ARGUMENTS: Tuple[Tuple[str, str], ...] = (
    ("folder", "Folder"),
    ("subject", "Subject"),
    ("session", "Session"),
    ("anat", "Anatomical Image"),
    ("func", "Functional Image"),
    ("maskdir", "Functional Mask Directory"),
    ("mask", "Functional Mask"),
)

DEFAULT_FUNC_PARAM = (
    "step=1,type=seg,algo=centermass:"
    "step=2,type=seg,algo=bsplinesyn,slicewise=1,iter=3"
)


@dataclass(frozen=True)
class RegistrationPolicy:
    version: int = 1
    seg_contrast: str = "t2"
    seg_centerline: str = "svm"
    seg_kernel: str = "2d"
    label_levels: Tuple[int, ...] = (3, 7)
    template_contrast: str = "t2"
    func_param: str = DEFAULT_FUNC_PARAM
    viewer: str = "fsleyes"
    seg_alpha: float = 70.0
    reg_alpha: float = 25.0

    def as_dict(self) -> dict:
        return {
            "version": self.version,
            "segmentation": {
                "contrast": self.seg_contrast,
                "centerline": self.seg_centerline,
                "kernel": self.seg_kernel,
            },
            "labeling": {"levels": list(self.label_levels)},
            "template_registration": {"contrast": self.template_contrast},
            "func_registration": {"param": self.func_param},
            "viewer": {
                "command": self.viewer,
                "seg_alpha": self.seg_alpha,
                "reg_alpha": self.reg_alpha,
            },
        }


@dataclass(frozen=True)
class RegistrationConfig:
    folder: Path
    subject: str
    session: str
    anat: str
    func: str
    maskdir: Path
    mask: str
    pam50_dir: Optional[Path] = None
    policy: RegistrationPolicy = field(default_factory=RegistrationPolicy)
    start_at: Optional[str] = None
    stop_after: Optional[str] = None
    qc: bool = True


def validate_arguments(values: dict) -> None:
    """
    Check that every mandatory argument is present.

    Raises:
        ConfigError: naming the first missing argument.
    """
    for key, label in REQUIRED_ARGUMENTS:
        value = values.get(key)
        if value is None or str(value) == "":
            raise ConfigError(f"{label} not specified. Exit program.")


def build_config(
    values: dict,
    policy: Optional[RegistrationPolicy] = None,
    pam50_dir: Optional[Path] = None,
    start_at: Optional[str] = None,
    stop_after: Optional[str] = None,
    qc: bool = True,
) -> RegistrationConfig:
    validate_arguments(values)
    return RegistrationConfig(
        folder=Path(values["folder"]).expanduser(),
        subject=str(values["subject"]),
        session=str(values["session"]),
        anat=str(values["anat"]),
        func=str(values["func"]),
        maskdir=Path(values["maskdir"]).expanduser(),
        mask=str(values["mask"]),
        pam50_dir=pam50_dir,
        policy=policy or RegistrationPolicy(),
        start_at=start_at,
        stop_after=stop_after,
        qc=qc,
    )


def resolve_pam50_dir(sct_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Resolve the PAM50 template directory.

    An explicit `sct_dir` is the only candidate when given; otherwise
    PAM50_PATH, SCT_DIR and ~/sct_7.1 are tried in that order.
    """
    if sct_dir is not None:
        explicit = Path(sct_dir).expanduser() / "data" / "PAM50"
        return explicit if explicit.exists() else None
    candidates: list[Path] = []
    env_path = os.environ.get("PAM50_PATH")
    if env_path:
        candidates.append(Path(env_path))
    env_sct = os.environ.get("SCT_DIR")
    if env_sct:
        candidates.append(Path(env_sct) / "data" / "PAM50")
    candidates.append(Path.home() / "sct_7.1" / "data" / "PAM50")
    for path in candidates:
        if path.exists():
            return path
    return None


def load_policy(path: Optional[Path]) -> RegistrationPolicy:
    """
    Load the tool policy YAML. Missing keys keep their defaults.

    Raises:
        ConfigError: when the file is missing or a value has the wrong type.
    """
    if path is None:
        return RegistrationPolicy()
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Policy not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as err:
        raise ConfigError(f"Failed to parse policy YAML: {err}") from err
    if not isinstance(raw, dict):
        raise ConfigError("sc_registration policy must be a mapping.")

    version = raw.get("version")
    if not isinstance(version, int):
        raise ConfigError("sc_registration policy missing integer 'version'.")

    defaults = RegistrationPolicy()
    segmentation = _section(raw, "segmentation")
    labeling = _section(raw, "labeling")
    template_reg = _section(raw, "template_registration")
    func_reg = _section(raw, "func_registration")
    viewer = _section(raw, "viewer")

    levels = labeling.get("levels", defaults.label_levels)
    if (
        not isinstance(levels, (list, tuple))
        or not levels
        or not all(isinstance(level, int) and not isinstance(level, bool) for level in levels)
    ):
        raise ConfigError("sc_registration policy labeling.levels must be a non-empty list of integers.")

    return RegistrationPolicy(
        version=version,
        seg_contrast=_string(segmentation, "contrast", defaults.seg_contrast, "segmentation"),
        seg_centerline=_string(segmentation, "centerline", defaults.seg_centerline, "segmentation"),
        seg_kernel=_string(segmentation, "kernel", defaults.seg_kernel, "segmentation"),
        label_levels=tuple(levels),
        template_contrast=_string(template_reg, "contrast", defaults.template_contrast, "template_registration"),
        func_param=_string(func_reg, "param", defaults.func_param, "func_registration"),
        viewer=_string(viewer, "command", defaults.viewer, "viewer"),
        seg_alpha=_alpha(viewer, "seg_alpha", defaults.seg_alpha),
        reg_alpha=_alpha(viewer, "reg_alpha", defaults.reg_alpha),
    )


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"sc_registration policy '{name}' must be a mapping.")
    return section


def _string(section: dict, key: str, default: str, prefix: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"sc_registration policy {prefix}.{key} must be a non-empty string.")
    return value


def _alpha(section: dict, key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
        raise ConfigError(f"sc_registration policy viewer.{key} must be a number between 0 and 100.")
    return float(value)
