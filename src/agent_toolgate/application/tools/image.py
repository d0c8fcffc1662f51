"""Image inspection and resize capabilities (Pillow)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from PIL import Image, UnidentifiedImageError

from agent_toolgate.application.errors import FileOperationError
from agent_toolgate.application.models import Capability, ToolOutcome
from agent_toolgate.application.tools.base import GateMode, ToolContext, ToolSpec
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)


async def image_info(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    path = arguments["path"]
    try:
        with Image.open(path) as img:
            width, height = img.size
            mode = img.mode
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
        msg = f"Failed to open image {path}: {e}"
        raise FileOperationError(msg) from e
    return ToolOutcome(
        f"Image: {path}\nDimensions: {width}x{height}\nColor type: {mode}",
        summary=f"image_info {path}",
    )


async def image_resize(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    """画像を Lanczos 補間で指定サイズにリサイズして保存する."""
    input_path = arguments["input_path"]
    output_path = arguments["output_path"]
    width = arguments["width"]
    height = arguments["height"]
    if width <= 0 or height <= 0:
        msg = f"Invalid size: {width}x{height}"
        raise FileOperationError(msg)

    logger.info(
        "Resizing image",
        input_path=input_path,
        output_path=output_path,
        session_id=ctx.session_id,
    )
    try:
        with Image.open(input_path) as img:
            resized = img.resize((width, height), Image.Resampling.LANCZOS)
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
        msg = f"Failed to open image {input_path}: {e}"
        raise FileOperationError(msg) from e
    try:
        resized.save(output_path)
    except (OSError, ValueError) as e:
        msg = f"Failed to save image {output_path}: {e}"
        raise FileOperationError(msg) from e

    return ToolOutcome(
        f"Image resized to {width}x{height} and saved to {output_path}",
        summary=f"image_resize {input_path} -> {output_path}",
    )


SPECS = {
    Capability.IMAGE_INFO: ToolSpec(
        handler=image_info, describe=lambda args: f"image_info {args['path']}"
    ),
    Capability.IMAGE_RESIZE: ToolSpec(
        handler=image_resize,
        describe=lambda args: (
            f"image_resize {args['input_path']} {args['width']}x{args['height']} "
            f"-> {args['output_path']}"
        ),
        gate=GateMode.CONFIRM,
        prompt=lambda args: (
            f"Resize image {args['input_path']} to {args['width']}x{args['height']} "
            f"and save to {args['output_path']} ? (y/n): "
        ),
        cancel_message="Image resize cancelled by user",
    ),
}
