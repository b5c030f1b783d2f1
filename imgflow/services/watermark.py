"""
Text/logo watermark overlay rendered with Pillow.

Runs locally (no provider call). Rendering is CPU bound so the async entry
point hands it to a worker thread.
"""
import asyncio
import io
from typing import Optional, Tuple

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from imgflow.schemas.tasks import WatermarkOptions, WatermarkPlacement
from imgflow.services import image_utils
from imgflow.services.errors import TaskValidationError
from imgflow.services.storage_service import StorageService
from imgflow.utils.logger import logger

PADDING = 20
MAX_LOGO_WIDTH_RATIO = 0.2


def _open_rgba(payload: bytes, what: str) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(payload))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise TaskValidationError(f"无法解析{what}: {exc}") from exc
    return img.convert("RGBA")


def fit_resolution(width: int, height: int, output_resolution: Optional[str]) -> Tuple[int, int]:
    """Fit (width, height) inside a "WxH" box keeping the aspect ratio."""
    if not output_resolution or output_resolution == "original":
        return width, height
    try:
        target_w, target_h = (int(v) for v in output_resolution.lower().split("x"))
    except ValueError as exc:
        raise TaskValidationError(f"无效的输出分辨率: {output_resolution}") from exc
    if target_w <= 0 or target_h <= 0:
        raise TaskValidationError(f"无效的输出分辨率: {output_resolution}")

    aspect = width / height
    if aspect > target_w / target_h:
        return target_w, max(1, round(target_w / aspect))
    return max(1, round(target_h * aspect)), target_h


def preset_origin(preset: str, canvas: Tuple[int, int], mark: Tuple[int, int]) -> Tuple[int, int]:
    width, height = canvas
    mark_w, mark_h = mark
    if preset == "top-left":
        return PADDING, PADDING
    if preset == "top-right":
        return width - mark_w - PADDING, PADDING
    if preset == "bottom-left":
        return PADDING, height - mark_h - PADDING
    if preset == "center":
        return (width - mark_w) // 2, (height - mark_h) // 2
    return width - mark_w - PADDING, height - mark_h - PADDING


def placement_origin(placement: WatermarkPlacement, canvas: Tuple[int, int]) -> Tuple[int, int]:
    """Editor coordinates (or normalized 0-1 values) mapped onto the output canvas."""
    width, height = canvas
    if placement.editor_width and placement.editor_height:
        rel_x = placement.x / placement.editor_width
        rel_y = placement.y / placement.editor_height
    else:
        rel_x, rel_y = placement.x, placement.y
    # May be negative or past the edge; paste() clips to the canvas
    return round(rel_x * width), round(rel_y * height)


def _logo_size(logo: Image.Image, position, canvas: Tuple[int, int]) -> Tuple[int, int]:
    width, height = canvas
    if isinstance(position, WatermarkPlacement):
        if position.editor_width and position.editor_height:
            w_ratio = width / position.editor_width
            h_ratio = height / position.editor_height
        else:
            w_ratio = h_ratio = 1.0
        if position.width and position.height:
            return max(1, round(position.width * w_ratio)), max(1, round(position.height * h_ratio))
        if position.scale:
            scale = position.scale * (w_ratio + h_ratio) / 2
            return max(1, round(logo.width * scale)), max(1, round(logo.height * scale))
    scale = min(width * MAX_LOGO_WIDTH_RATIO / logo.width, 1.0)
    return max(1, round(logo.width * scale)), max(1, round(logo.height * scale))


def _with_opacity(img: Image.Image, opacity: float) -> Image.Image:
    if opacity >= 1.0:
        return img
    alpha = img.getchannel("A").point(lambda a: round(a * opacity))
    img.putalpha(alpha)
    return img


def _text_layer(text: str, opacity: float, canvas: Tuple[int, int]) -> Image.Image:
    font = ImageFont.load_default(size=max(12, canvas[0] // 20))
    probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = probe.textbbox((0, 0), text, font=font)
    layer = Image.new("RGBA", (max(1, right - left), max(1, bottom - top)), (0, 0, 0, 0))
    ImageDraw.Draw(layer).text((-left, -top), text, font=font, fill=(255, 255, 255, round(255 * opacity)))
    return layer


def render_watermark(image: bytes, options: WatermarkOptions, logo: Optional[bytes] = None) -> bytes:
    """Return PNG bytes of `image` with the watermark composited on top."""
    base = _open_rgba(image, "图片")
    canvas = fit_resolution(base.width, base.height, options.output_resolution)
    if canvas != base.size:
        base = base.resize(canvas, Image.LANCZOS)

    if options.watermark_type == "logo" and logo is not None:
        mark = _open_rgba(logo, "水印 Logo")
        mark = mark.resize(_logo_size(mark, options.watermark_position, canvas), Image.LANCZOS)
        mark = _with_opacity(mark, options.watermark_opacity)
    else:
        mark = _text_layer(options.watermark_text, options.watermark_opacity, canvas)

    if isinstance(options.watermark_position, WatermarkPlacement):
        origin = placement_origin(options.watermark_position, canvas)
    else:
        origin = preset_origin(options.watermark_position, canvas, mark.size)

    overlay = Image.new("RGBA", canvas, (0, 0, 0, 0))
    overlay.paste(mark, origin, mark)
    out = io.BytesIO()
    Image.alpha_composite(base, overlay).save(out, format="PNG")
    return out.getvalue()


async def apply_watermark(image: str, options: WatermarkOptions, storage: StorageService) -> str:
    """Watermark any image reference and return a PNG data URL."""
    payload, _ = await storage.load(image)
    logo = None
    if options.watermark_type == "logo":
        if options.watermark_logo_url:
            logo, _ = await storage.load(options.watermark_logo_url)
        else:
            logger.warning("Logo watermark requested without watermarkLogoUrl, using text")

    rendered = await asyncio.to_thread(render_watermark, payload, options, logo)
    return image_utils.to_data_url(rendered, "image/png")
