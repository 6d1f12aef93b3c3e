"""
The ordered registration steps.

Anatomical steps A.1-A.8 register the cropped T2w image to PAM50; functional
steps F.1-F.6 register PAM50 to the mean functional image, seeded with the
anatomical warps. Each step declares the files it needs and the files it must
leave behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, cast

import nibabel as nib
import numpy as np
from nibabel.filebasedimages import ImageFileError

from screg import layout as L
from screg.checkpoint import Checkpoint, CropBounds
from screg.commands import (
    CommandRunner,
    ViewerLayer,
    crop_command,
    deepseg_command,
    label_command,
    register_multimodal_command,
    register_to_template_command,
    tmean_command,
    warp_template_command,
)
from screg.config import RegistrationConfig
from screg.layout import SessionLayout, copy_and_rename


class StepFailure(RuntimeError):
    """Raised by a step action; the pipeline attaches the step id."""


@dataclass
class StepContext:
    config: RegistrationConfig
    layout: SessionLayout
    pam50_dir: Path
    runner: CommandRunner
    checkpoint: Checkpoint
    state: dict = field(default_factory=dict)

    @property
    def policy(self):
        return self.config.policy

    def pam50(self, name: str) -> Path:
        return self.pam50_dir / "template" / name


@dataclass(frozen=True)
class Step:
    step_id: str
    name: str
    action: Callable[[StepContext], None]
    inputs: tuple[Path, ...] = ()
    outputs: tuple[Path, ...] = ()


def build_steps(layout: SessionLayout, config: RegistrationConfig, pam50_dir: Path) -> list[Step]:
    def pam50(name: str) -> Path:
        return pam50_dir / "template" / name

    anat, func = layout.anat, layout.func
    source_anat = layout.source_anat_dir / config.anat
    source_func = layout.source_func_dir / config.func
    source_mask = config.maskdir / config.mask
    warped = tuple(layout.template_dir / name for name in ("PAM50_t2.nii.gz", "PAM50_gm.nii.gz", "PAM50_wm.nii.gz"))

    return [
        Step("A.1", "copy_anat", _copy_anat, (source_anat,), (anat(L.ANAT),)),
        Step("A.2", "crop_bounds", _crop_bounds, (anat(L.ANAT),)),
        Step("A.3", "crop_anat", _crop_anat, (anat(L.ANAT),), (anat(L.ANAT_CROPPED),)),
        Step("A.4", "segment_cord", _segment_cord, (anat(L.ANAT_CROPPED),), (anat(L.ANAT_SEG),)),
        Step("A.5", "touch_up_seg", _touch_up_seg, (anat(L.ANAT_CROPPED), anat(L.ANAT_SEG)), (anat(L.ANAT_SEG),)),
        Step("A.6", "label_vertebrae", _label_vertebrae, (anat(L.ANAT_CROPPED),), (anat(L.ANAT_LABELS),)),
        Step(
            "A.7",
            "register_to_template",
            _register_to_template,
            (anat(L.ANAT_CROPPED), anat(L.ANAT_SEG), anat(L.ANAT_LABELS)),
            (
                anat(L.WARP_TEMPLATE2ANAT),
                anat(L.WARP_ANAT2TEMPLATE),
                anat(L.TEMPLATE2ANAT),
                anat(L.ANAT2TEMPLATE),
            ),
        ),
        Step(
            "A.8",
            "verify_anat_registration",
            _verify_anat_registration,
            (anat(L.ANAT_CROPPED), anat(L.TEMPLATE2ANAT), anat(L.ANAT2TEMPLATE), pam50("PAM50_t2.nii.gz")),
        ),
        Step("F.1", "copy_func", _copy_func, (source_func, source_mask), (func(L.FUNC), func(L.FUNC_MASK))),
        Step("F.2", "mean_func", _mean_func, (func(L.FUNC),), (func(L.FUNC_MEAN),)),
        Step(
            "F.3",
            "register_template_to_func",
            _register_template_to_func,
            (
                pam50("PAM50_t2s.nii.gz"),
                pam50("PAM50_cord.nii.gz"),
                func(L.FUNC_MEAN),
                func(L.FUNC_MASK),
                anat(L.WARP_TEMPLATE2ANAT),
                anat(L.WARP_ANAT2TEMPLATE),
            ),
            (func(L.PAM50_T2S_REG), func(L.WARP_PAM50_T2S2FUNC), func(L.WARP_FUNC2PAM50_T2S)),
        ),
        Step(
            "F.4",
            "verify_func_registration",
            _verify_func_registration,
            (func(L.FUNC_MEAN), func(L.PAM50_T2S_REG)),
        ),
        Step("F.5", "warp_template", _warp_template, (func(L.FUNC_MEAN), func(L.WARP_PAM50_T2S2FUNC)), warped),
        Step("F.6", "final_overlay", _final_overlay, (func(L.FUNC_MEAN), *warped)),
    ]


# ---------------------------------------------------------------------------
# Anatomical steps
# ---------------------------------------------------------------------------


def _copy_anat(ctx: StepContext) -> None:
    source = ctx.layout.source_anat_dir / ctx.config.anat
    copy_and_rename(source, ctx.layout.anat_dir, L.ANAT)


def _crop_bounds(ctx: StepContext) -> None:
    bounds = _ask_crop_bounds(ctx)
    print(f"Cropping slices {bounds.inferior}-{bounds.superior} ({bounds.slice_count} slices)")


def _ask_crop_bounds(ctx: StepContext) -> CropBounds:
    image = ctx.layout.anat(L.ANAT)
    bounds = ctx.checkpoint.crop_bounds(image).validate(image_slice_count(image))
    ctx.state["crop_bounds"] = bounds
    return bounds


def _crop_anat(ctx: StepContext) -> None:
    # A run resumed at this step has no bounds from A.2 yet.
    bounds = cast(Optional[CropBounds], ctx.state.get("crop_bounds")) or _ask_crop_bounds(ctx)
    _run(
        ctx,
        crop_command(ctx.layout.anat(L.ANAT), ctx.layout.anat(L.ANAT_CROPPED), bounds.inferior, bounds.slice_count),
        ctx.layout.anat_dir,
    )


def _segment_cord(ctx: StepContext) -> None:
    seg_path = ctx.layout.anat(L.ANAT_SEG)
    _run(
        ctx,
        deepseg_command(
            ctx.layout.anat(L.ANAT_CROPPED),
            seg_path,
            ctx.policy.seg_contrast,
            ctx.policy.seg_centerline,
            ctx.policy.seg_kernel,
        ),
        ctx.layout.anat_dir,
    )
    if not seg_path.exists():
        return
    metrics = compute_segmentation_metrics(seg_path)
    ctx.state["segmentation"] = metrics
    if metrics["voxels"] == 0:
        raise StepFailure(f"Cord segmentation is empty: {seg_path}")


def _touch_up_seg(ctx: StepContext) -> None:
    ctx.checkpoint.review(
        "Touch up anatomical mask",
        [
            ViewerLayer(ctx.layout.anat(L.ANAT_CROPPED), cmap="greyscale"),
            ViewerLayer(ctx.layout.anat(L.ANAT_SEG), cmap="red", alpha=ctx.policy.seg_alpha),
        ],
        wait=True,
    )


def _label_vertebrae(ctx: StepContext) -> None:
    labels_path = ctx.layout.anat(L.ANAT_LABELS)
    _run(
        ctx,
        label_command(ctx.layout.anat(L.ANAT_CROPPED), labels_path, ctx.policy.label_levels),
        ctx.layout.anat_dir,
    )
    if not labels_path.exists():
        return
    metrics = compute_label_metrics(labels_path)
    ctx.state["labels"] = metrics
    if metrics["label_count"] == 0:
        raise StepFailure(f"No vertebral labels were placed: {labels_path}")


def _register_to_template(ctx: StepContext) -> None:
    _run(
        ctx,
        register_to_template_command(
            ctx.layout.anat(L.ANAT_CROPPED),
            ctx.layout.anat(L.ANAT_SEG),
            ctx.layout.anat(L.ANAT_LABELS),
            ctx.policy.template_contrast,
            ctx.layout.anat_dir,
        ),
        ctx.layout.anat_dir,
    )


def _verify_anat_registration(ctx: StepContext) -> None:
    ctx.checkpoint.review(
        "Check registration: template in anatomical space",
        [ViewerLayer(ctx.layout.anat(L.ANAT_CROPPED)), ViewerLayer(ctx.layout.anat(L.TEMPLATE2ANAT))],
        wait=True,
    )
    ctx.checkpoint.review(
        "Check registration: anatomical image in template space",
        [ViewerLayer(ctx.pam50("PAM50_t2.nii.gz")), ViewerLayer(ctx.layout.anat(L.ANAT2TEMPLATE))],
        wait=True,
    )


# ---------------------------------------------------------------------------
# Functional steps
# ---------------------------------------------------------------------------


def _copy_func(ctx: StepContext) -> None:
    func_path = copy_and_rename(ctx.layout.source_func_dir / ctx.config.func, ctx.layout.func_dir, L.FUNC)
    copy_and_rename(ctx.config.maskdir / ctx.config.mask, ctx.layout.func_dir, L.FUNC_MASK)
    ctx.state["func_volumes"] = image_volume_count(func_path)


def _mean_func(ctx: StepContext) -> None:
    _run(ctx, tmean_command(ctx.layout.func(L.FUNC), ctx.layout.func(L.FUNC_MEAN)), ctx.layout.func_dir)


def _register_template_to_func(ctx: StepContext) -> None:
    _run(
        ctx,
        register_multimodal_command(
            source=ctx.pam50("PAM50_t2s.nii.gz"),
            source_seg=ctx.pam50("PAM50_cord.nii.gz"),
            dest=ctx.layout.func(L.FUNC_MEAN),
            dest_seg=ctx.layout.func(L.FUNC_MASK),
            param=ctx.policy.func_param,
            output=ctx.layout.func(L.PAM50_T2S_REG),
            owarp=ctx.layout.func(L.WARP_PAM50_T2S2FUNC),
            owarpinv=ctx.layout.func(L.WARP_FUNC2PAM50_T2S),
            initwarp=ctx.layout.anat(L.WARP_TEMPLATE2ANAT),
            initwarpinv=ctx.layout.anat(L.WARP_ANAT2TEMPLATE),
        ),
        ctx.layout.func_dir,
    )


def _verify_func_registration(ctx: StepContext) -> None:
    ctx.checkpoint.review(
        "Show results of registration",
        [
            ViewerLayer(ctx.layout.func(L.FUNC_MEAN)),
            ViewerLayer(ctx.layout.func(L.PAM50_T2S_REG), cmap="red", alpha=ctx.policy.reg_alpha),
        ],
        wait=True,
    )


def _warp_template(ctx: StepContext) -> None:
    _run(
        ctx,
        warp_template_command(
            ctx.layout.func(L.FUNC_MEAN),
            ctx.layout.func(L.WARP_PAM50_T2S2FUNC),
            ctx.layout.func_dir / L.LABEL_DIR,
        ),
        ctx.layout.func_dir,
    )


def _final_overlay(ctx: StepContext) -> None:
    template_dir = ctx.layout.template_dir
    ctx.checkpoint.review(
        "Show final result from warped atlas to functional space",
        [
            ViewerLayer(ctx.layout.func(L.FUNC_MEAN), cmap="greyscale", alpha=100.0),
            ViewerLayer(template_dir / "PAM50_t2.nii.gz", cmap="greyscale", alpha=100.0, display_range=(0, 4000)),
            ViewerLayer(template_dir / "PAM50_gm.nii.gz", cmap="red-yellow", alpha=50.0, display_range=(0.4, 1)),
            ViewerLayer(template_dir / "PAM50_wm.nii.gz", cmap="blue-lightblue", alpha=50.0, display_range=(0.4, 1)),
        ],
        wait=False,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(ctx: StepContext, cmd: list[str], cwd: Path) -> None:
    ok, message = ctx.runner.run(cmd, cwd=cwd)
    if not ok:
        raise StepFailure(f"{cmd[0]}: {message}")


def image_slice_count(path: Path) -> Optional[int]:
    """Number of slices along z, or None when the header cannot be read."""
    shape = _image_shape(path)
    if shape is None or len(shape) < 3:
        return None
    return int(shape[2])


def image_volume_count(path: Path) -> Optional[int]:
    shape = _image_shape(path)
    if shape is None:
        return None
    return int(shape[3]) if len(shape) > 3 else 1


def _image_shape(path: Path) -> Optional[tuple[int, ...]]:
    try:
        img = cast(Any, nib.load(str(path)))
    except (OSError, ImageFileError):
        return None
    return tuple(img.shape)


def compute_segmentation_metrics(seg_path: Path) -> dict:
    try:
        img = cast(Any, nib.load(str(seg_path)))
        data = img.get_fdata()
    except (OSError, ImageFileError) as err:
        raise StepFailure(f"Cannot read segmentation {seg_path}: {err}") from err
    if data.ndim > 3:
        data = data[..., 0]
    mask = data > 0
    voxels = int(mask.sum())
    zooms = img.header.get_zooms()[:3]
    voxel_volume = float(np.prod(zooms))
    slice_present = mask.sum(axis=(0, 1)) > 0 if mask.ndim == 3 else np.zeros(0, dtype=bool)
    z_indices = np.flatnonzero(slice_present)
    return {
        "voxels": voxels,
        "cord_volume_mm3": float(voxels * voxel_volume),
        "z_min": int(z_indices.min()) if z_indices.size else None,
        "z_max": int(z_indices.max()) if z_indices.size else None,
    }


def compute_label_metrics(label_path: Path) -> dict:
    try:
        img = cast(Any, nib.load(str(label_path)))
        data = img.get_fdata()
    except (OSError, ImageFileError) as err:
        raise StepFailure(f"Cannot read labels {label_path}: {err}") from err
    if data.ndim > 3:
        data = data[..., 0]
    labels = np.unique(np.rint(data).astype(int))
    labels = labels[labels > 0]
    return {
        "label_count": int(labels.size),
        "labels": [int(value) for value in labels],
    }
