"""Frame compositing with Pillow.

Draws one scene into a fixed-size RGBA surface, bottom to top:
1. Background (solid colour, or aspect-filled image)
2. Legibility gradient (black, 70% at the bottom edge to clear at 40% height)
3. Title (bold, wrapped)
4. Subtitle (regular, slightly translucent, wrapped)

Layout constants are authored for 1280x720 and scaled to the surface.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from PIL import Image, ImageColor, ImageDraw, ImageFont

from storyforge.config import get_settings
from storyforge.render.image_resolver import ImageResolver, ResolvedImage
from storyforge.render.text_wrap import draw_wrapped_text
from storyforge.schemas.scene import ImageBackground, Scene, SolidBackground

logger = logging.getLogger(__name__)

REFERENCE_WIDTH = 1280
REFERENCE_HEIGHT = 720

TITLE_COLOR = (248, 250, 252, 255)  # #f8fafc
SUBTITLE_COLOR = (248, 250, 252, 217)  # rgba(248,250,252,0.85)
GRADIENT_MAX_ALPHA = 0.70
# Fully clear at 40% of the height measured from the top (60% from the
# bottom), matching the editor's createLinearGradient(0, H, 0, 0.4 * H).
GRADIENT_CLEAR_AT = 0.4


@dataclass(frozen=True)
class TextLayout:
    """Text geometry for one surface size."""

    inset_x: float
    max_width: float
    title_font_size: int
    title_baseline: float
    title_line_height: float
    subtitle_font_size: int
    subtitle_baseline: float
    subtitle_line_height: float

    @classmethod
    def for_size(cls, width: int, height: int) -> "TextLayout":
        sx = width / REFERENCE_WIDTH
        sy = height / REFERENCE_HEIGHT
        title_size = max(1, round(64 * sy))
        subtitle_size = max(1, round(32 * sy))
        return cls(
            inset_x=80 * sx,
            max_width=width - 160 * sx,
            title_font_size=title_size,
            title_baseline=height - 220 * sy,
            title_line_height=title_size + 8 * sy,
            subtitle_font_size=subtitle_size,
            subtitle_baseline=height - 80 * sy,
            subtitle_line_height=44 * sy,
        )


def aspect_fill_rect(
    image_width: int,
    image_height: int,
    surface_width: int,
    surface_height: int,
) -> tuple[float, float, float, float]:
    """Placement that covers the surface while keeping the image's aspect.

    The image is scaled by the larger of the width-fit and height-fit
    factors and centred, so one axis matches exactly and the other is
    cropped evenly on both sides.

    Returns:
        (x, y, width, height) of the drawn image in surface coordinates
    """
    scale = max(surface_width / image_width, surface_height / image_height)
    draw_width = image_width * scale
    draw_height = image_height * scale
    return (
        (surface_width - draw_width) / 2,
        (surface_height - draw_height) / 2,
        draw_width,
        draw_height,
    )


def parse_color(value: Optional[str], default: str) -> tuple[int, int, int, int]:
    """Parse a CSS colour, falling back to ``default`` when empty or invalid."""
    if value:
        try:
            return ImageColor.getcolor(value.strip(), "RGBA")
        except ValueError:
            logger.warning(f"[COMPOSITE] Unparseable colour {value!r}, using {default}")
    return ImageColor.getcolor(default, "RGBA")


def load_font(candidates: list[str], size: int) -> Any:
    """Load the first available TrueType font, or Pillow's default font."""
    for path in candidates:
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue
    logger.warning(f"[COMPOSITE] No font found in candidates, using PIL default at {size}px")
    return ImageFont.load_default(size=size)


class FrameCompositor:
    """Service for drawing scenes into a raster surface."""

    def __init__(
        self,
        resolver: Optional[ImageResolver] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ):
        self.settings = get_settings()
        self.resolver = resolver or ImageResolver()
        self.width = width or self.settings.canvas_width
        self.height = height or self.settings.canvas_height
        self.default_color = self.settings.default_background_color
        self.layout = TextLayout.for_size(self.width, self.height)
        self._title_font = load_font(self.settings.font_bold_paths, self.layout.title_font_size)
        self._subtitle_font = load_font(self.settings.font_regular_paths, self.layout.subtitle_font_size)
        self._gradient = self._build_gradient()
        self._fitted: dict[str, Image.Image] = {}

    @property
    def size(self) -> tuple[int, int]:
        return (self.width, self.height)

    def new_surface(self) -> Image.Image:
        return Image.new("RGBA", self.size, (0, 0, 0, 0))

    def reset(self) -> None:
        """Drop per-run caches (resolved and fitted background images)."""
        self.resolver.clear_cache()
        self._fitted.clear()

    async def composite(self, surface: Image.Image, scene: Scene) -> None:
        """Overwrite ``surface`` with the rendering of ``scene``.

        The background image is resolved and the frame drawn off-surface in a
        worker thread; the finished frame then replaces the surface in a
        single paste on the event loop, so readers of the surface never see
        a half-drawn frame.
        """
        if surface.size != self.size:
            raise ValueError(f"Surface is {surface.size}, compositor expects {self.size}")

        background = await self._resolve_background(scene)
        frame = await asyncio.to_thread(self._render, scene, background)
        surface.paste(frame, (0, 0))

    async def render_frame(self, scene: Scene) -> Image.Image:
        """Render ``scene`` into a new image (stills, thumbnails)."""
        background = await self._resolve_background(scene)
        return await asyncio.to_thread(self._render, scene, background)

    async def _resolve_background(self, scene: Scene) -> Optional[ResolvedImage]:
        bg = scene.background
        if not isinstance(bg, ImageBackground) or not bg.reference:
            return None
        result = await self.resolver.resolve(bg.reference)
        if isinstance(result, ResolvedImage):
            return result
        return None

    def _render(self, scene: Scene, background: Optional[ResolvedImage]) -> Image.Image:
        # 1. Clear
        frame = self.new_surface()

        # 2. Background
        if background is not None:
            frame.alpha_composite(self._fit_background(background))
        elif isinstance(scene.background, SolidBackground):
            frame.paste(parse_color(scene.background.value, self.default_color), (0, 0, *self.size))
        else:
            frame.paste(parse_color(None, self.default_color), (0, 0, *self.size))

        # 3. Overlay
        frame.alpha_composite(self._gradient)

        # 4-5. Text (drawn on its own layer so translucent fills blend over the frame)
        text_layer = Image.new("RGBA", self.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(text_layer)
        layout = self.layout
        next_baseline = draw_wrapped_text(
            draw,
            scene.title,
            (layout.inset_x, layout.title_baseline),
            layout.max_width,
            layout.title_line_height,
            self._title_font,
            TITLE_COLOR,
        )
        subtitle_baseline = layout.subtitle_baseline
        if scene.title.strip():
            subtitle_baseline = max(
                subtitle_baseline,
                next_baseline - layout.title_line_height + layout.subtitle_line_height,
            )
        draw_wrapped_text(
            draw,
            scene.subtitle,
            (layout.inset_x, subtitle_baseline),
            layout.max_width,
            layout.subtitle_line_height,
            self._subtitle_font,
            SUBTITLE_COLOR,
        )
        frame.alpha_composite(text_layer)
        return frame

    def _fit_background(self, background: ResolvedImage) -> Image.Image:
        """Aspect-fill ``background`` onto a surface-sized transparent layer."""
        fitted = self._fitted.get(background.reference)
        if fitted is not None:
            return fitted

        x, y, w, h = aspect_fill_rect(background.width, background.height, self.width, self.height)
        scaled = background.image.resize(
            (max(1, round(w)), max(1, round(h))),
            Image.Resampling.BILINEAR,
        )
        fitted = self.new_surface()
        fitted.paste(scaled, (round(x), round(y)))
        self._fitted[background.reference] = fitted
        logger.info(
            f"[COMPOSITE] Fitted background {background.width}x{background.height} "
            f"-> {w:.0f}x{h:.0f} at ({x:.0f},{y:.0f})"
        )
        return fitted

    def _build_gradient(self) -> Image.Image:
        """Black layer whose alpha ramps from 0 at 40% height to 70% at the bottom."""
        clear_at = self.height * GRADIENT_CLEAR_AT
        span = self.height - clear_at
        column = Image.new("L", (1, self.height), 0)
        for y in range(self.height):
            # Sample at pixel centres
            t = (y + 0.5 - clear_at) / span
            if t > 0:
                column.putpixel((0, y), round(255 * GRADIENT_MAX_ALPHA * min(1.0, t)))
        gradient = Image.new("RGBA", self.size, (0, 0, 0, 255))
        gradient.putalpha(column.resize(self.size, Image.Resampling.NEAREST))
        return gradient
