"""
Human checkpoints: crop bounds entry and visual review of intermediate images.

The pipeline only talks to a `Checkpoint`. `TerminalCheckpoint` opens viewer
windows and reads from the terminal; `ScriptedCheckpoint` answers with preset
bounds and never opens a window.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from screg.commands import CommandRunner, ViewerLayer, viewer_command


class CropBoundsError(ValueError):
    """Raised when slice bounds are missing or inconsistent."""


class ViewerError(RuntimeError):
    """Raised when a viewer window cannot be opened or exits with an error."""


@dataclass(frozen=True)
class CropBounds:
    inferior: int
    superior: int

    @property
    def slice_count(self) -> int:
        return self.superior - self.inferior

    def validate(self, n_slices: Optional[int] = None) -> "CropBounds":
        if self.inferior < 0:
            raise CropBoundsError(f"Inferior slice must be >= 0, got {self.inferior}.")
        if self.superior <= self.inferior:
            raise CropBoundsError(
                f"Superior slice ({self.superior}) must be greater than inferior slice ({self.inferior})."
            )
        if n_slices is not None and self.superior > n_slices:
            raise CropBoundsError(
                f"Superior slice ({self.superior}) exceeds the {n_slices} slices of the anatomical image."
            )
        return self


class Checkpoint:
    """Interface used by the pipeline for every manual intervention."""

    def crop_bounds(self, image: Path) -> CropBounds:
        raise NotImplementedError

    def review(self, message: str, layers: Sequence[ViewerLayer], wait: bool = True) -> None:
        raise NotImplementedError


class TerminalCheckpoint(Checkpoint):
    def __init__(
        self,
        runner: CommandRunner,
        viewer: str = "fsleyes",
        input_fn: Callable[[str], str] = input,
        print_fn: Callable[[str], None] = print,
        bounds: Optional[CropBounds] = None,
    ):
        self.runner = runner
        self.viewer = viewer
        self.input_fn = input_fn
        self.print_fn = print_fn
        self.bounds = bounds

    def crop_bounds(self, image: Path) -> CropBounds:
        if self.bounds is not None:
            return self.bounds
        self.print_fn("Determine which z slices to crop include")
        self._show([ViewerLayer(image)], wait=False, cwd=image.parent)
        inferior = self._read_int("Enter the inferior slice number and press ENTER: ")
        superior = self._read_int("Enter the superior slice number and press ENTER: ")
        return CropBounds(inferior=inferior, superior=superior)

    def review(self, message: str, layers: Sequence[ViewerLayer], wait: bool = True) -> None:
        self.print_fn(message)
        self._show(layers, wait=wait, cwd=Path(layers[0].path).parent if layers else None)

    def _show(self, layers: Sequence[ViewerLayer], wait: bool, cwd: Optional[Path]) -> None:
        cmd = viewer_command(self.viewer, layers)
        ok, output = self.runner.run(cmd, cwd=cwd) if wait else self.runner.launch(cmd, cwd=cwd)
        if not ok:
            raise ViewerError(output)

    def _read_int(self, prompt: str) -> int:
        while True:
            try:
                raw = self.input_fn(prompt)
            except EOFError as err:
                raise CropBoundsError("No slice number entered.") from err
            try:
                return int(raw.strip())
            except ValueError:
                self.print_fn(f"'{raw.strip()}' is not a slice number.")


class ScriptedCheckpoint(Checkpoint):
    """Checkpoint with fixed answers; reviews are recorded instead of displayed."""

    def __init__(self, inferior: Optional[int] = None, superior: Optional[int] = None):
        self.inferior = inferior
        self.superior = superior
        self.reviews: list[tuple[str, list[Path], bool]] = []

    def crop_bounds(self, image: Path) -> CropBounds:
        if self.inferior is None or self.superior is None:
            raise CropBoundsError("Crop bounds required: pass --inferior and --superior.")
        return CropBounds(inferior=self.inferior, superior=self.superior)

    def review(self, message: str, layers: Sequence[ViewerLayer], wait: bool = True) -> None:
        self.reviews.append((message, [Path(layer.path) for layer in layers], wait))
