"""
External command execution and command line builders for FSL and SCT tools.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence


def run_command(cmd: list[str], cwd: Optional[Path] = None) -> tuple[bool, str]:
    """Run a command to completion and return (success, output)."""
    try:
        result = subprocess.run(cmd, text=True, capture_output=True, check=True, cwd=cwd)
    except FileNotFoundError:
        return False, f"Command not found: {cmd[0]}"
    except subprocess.CalledProcessError as err:
        output = "\n".join(part for part in [err.stdout, err.stderr] if part)
        return False, output.strip() or f"{cmd[0]} exited with status {err.returncode}"
    output = "\n".join(part for part in [result.stdout, result.stderr] if part)
    return True, output.strip()


def launch_command(cmd: list[str], cwd: Optional[Path] = None) -> tuple[bool, str]:
    """Start a command in the background without waiting for it."""
    try:
        subprocess.Popen(cmd, cwd=cwd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except FileNotFoundError:
        return False, f"Command not found: {cmd[0]}"
    except OSError as err:
        return False, f"{cmd[0]} failed to start: {err}"
    return True, ""


class CommandRunner:
    """Runs external tools. Tests substitute a recording runner."""

    def run(self, cmd: list[str], cwd: Optional[Path] = None) -> tuple[bool, str]:
        return run_command(cmd, cwd=cwd)

    def launch(self, cmd: list[str], cwd: Optional[Path] = None) -> tuple[bool, str]:
        return launch_command(cmd, cwd=cwd)


@dataclass(frozen=True)
class ViewerLayer:
    path: Path
    cmap: Optional[str] = None
    alpha: Optional[float] = None
    display_range: Optional[tuple[float, float]] = None


def viewer_command(viewer: str, layers: Sequence[ViewerLayer]) -> list[str]:
    cmd = [viewer]
    for layer in layers:
        cmd.append(str(layer.path))
        if layer.cmap is not None:
            cmd.extend(["-cm", layer.cmap])
        if layer.display_range is not None:
            low, high = layer.display_range
            cmd.extend(["-dr", _num(low), _num(high)])
        if layer.alpha is not None:
            cmd.extend(["-a", f"{float(layer.alpha):.1f}"])
    return cmd


def crop_command(source: Path, dest: Path, z_min: int, z_size: int) -> list[str]:
    # x and y are kept whole; only the z (slice) axis is restricted.
    return ["fslroi", str(source), str(dest), "0", "-1", "0", "-1", str(z_min), str(z_size)]


def deepseg_command(image: Path, output: Path, contrast: str, centerline: str, kernel: str) -> list[str]:
    return [
        "sct_deepseg_sc",
        "-i", str(image),
        "-c", contrast,
        "-centerline", centerline,
        "-kernel", kernel,
        "-o", str(output),
    ]


def label_command(image: Path, output: Path, levels: Sequence[int]) -> list[str]:
    return [
        "sct_label_utils",
        "-i", str(image),
        "-o", str(output),
        "-create-viewer", ",".join(str(level) for level in levels),
    ]


def register_to_template_command(
    image: Path,
    seg: Path,
    labels: Path,
    contrast: str,
    ofolder: Path,
) -> list[str]:
    return [
        "sct_register_to_template",
        "-i", str(image),
        "-s", str(seg),
        "-l", str(labels),
        "-c", contrast,
        "-ofolder", str(ofolder),
    ]


def tmean_command(source: Path, dest: Path) -> list[str]:
    return ["fslmaths", str(source), "-Tmean", str(dest)]


def register_multimodal_command(
    source: Path,
    source_seg: Path,
    dest: Path,
    dest_seg: Path,
    param: str,
    output: Path,
    owarp: Path,
    owarpinv: Path,
    initwarp: Optional[Path] = None,
    initwarpinv: Optional[Path] = None,
) -> list[str]:
    cmd = [
        "sct_register_multimodal",
        "-i", str(source),
        "-iseg", str(source_seg),
        "-d", str(dest),
        "-dseg", str(dest_seg),
        "-param", param,
    ]
    if initwarp is not None:
        cmd.extend(["-initwarp", str(initwarp)])
    if initwarpinv is not None:
        cmd.extend(["-initwarpinv", str(initwarpinv)])
    cmd.extend(["-o", str(output), "-owarp", str(owarp), "-owarpinv", str(owarpinv)])
    return cmd


def warp_template_command(dest: Path, warp: Path, ofolder: Path) -> list[str]:
    return ["sct_warp_template", "-d", str(dest), "-w", str(warp), "-ofolder", str(ofolder)]


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
