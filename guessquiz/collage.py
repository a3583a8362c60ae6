"""
2x2 avatar collage rendering for the avatar guessing mode.

Known degradation: a tile whose image cannot be read is drawn as a grey
placeholder with a red badge. The round still counts, so if the broken tile
is the correct one the player has to guess by elimination.
"""
import io
import logging
import random
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from PIL import Image, ImageDraw, ImageFont

from .choice_builder import sample_without_replacement, shuffled

logger = logging.getLogger(__name__)

GRID_SIZE = 2
TILE_COUNT = GRID_SIZE * GRID_SIZE
DEFAULT_TILE_SIZE = 512

BACKGROUND_COLOR = (17, 17, 17)
BADGE_COLOR = (255, 255, 255)
BADGE_TEXT_COLOR = (0, 0, 0)
ERROR_TILE_COLOR = (102, 102, 102)
ERROR_BADGE_COLOR = (200, 30, 30)
ERROR_TEXT_COLOR = (255, 255, 255)

BADGE_OFFSET = 10
BADGE_SIZE = 60
FONT_SIZE = 40
JPEG_QUALITY = 90


@dataclass(frozen=True)
class Collage:
    image_bytes: bytes
    correct_position: int
    entity_ids: List[str]


def _load_font(size: int):
    try:
        return ImageFont.truetype("DejaVuSans-Bold.ttf", size)
    except OSError:
        return ImageFont.load_default(size=size)


def tile_origin(position: int, tile_size: int) -> Tuple[int, int]:
    """Top-left pixel of the 1-based ``position`` in the grid."""
    row, column = divmod(position - 1, GRID_SIZE)
    return column * tile_size, row * tile_size


class CollageCompositor:
    """Composes one correct avatar and three others into a numbered grid."""

    def __init__(self, tile_size: int = DEFAULT_TILE_SIZE, rng: Optional[random.Random] = None):
        self.tile_size = tile_size
        self.rng = rng or random.Random()
        self._font = _load_font(FONT_SIZE)

    def pick_entities(self, correct_id: str, distractor_pool: Sequence[str]) -> Tuple[List[str], int]:
        """
        Choose the tiles and their display order.

        Three others are drawn without replacement when the pool is large
        enough and with replacement otherwise.

        Returns:
            Entity ids in display order and the 1-based position of ``correct_id``
        """
        pool = sorted({entity_id for entity_id in distractor_pool if entity_id != correct_id})
        others_needed = TILE_COUNT - 1
        if len(pool) >= others_needed:
            others = sample_without_replacement(pool, others_needed, self.rng)
        elif pool:
            others = [self.rng.choice(pool) for _ in range(others_needed)]
        else:
            others = []

        # Shuffle positions rather than ids so duplicate distractors stay distinct.
        working_set = [correct_id] + others
        order = shuffled(list(range(len(working_set))), self.rng)
        entity_ids = [working_set[i] for i in order]
        return entity_ids, order.index(0) + 1

    def compose(
        self,
        correct_id: str,
        distractor_pool: Sequence[str],
        image_paths: Mapping[str, str]
    ) -> Collage:
        """
        Build the collage for one round.

        Args:
            correct_id: Entity the player must find
            distractor_pool: Entities eligible as the other tiles
            image_paths: Entity id -> avatar file path

        Returns:
            Collage with the encoded JPEG and the correct tile position
        """
        entity_ids, correct_position = self.pick_entities(correct_id, distractor_pool)
        image_bytes = self.render([image_paths.get(entity_id, '') for entity_id in entity_ids])
        return Collage(image_bytes=image_bytes, correct_position=correct_position, entity_ids=entity_ids)

    def render(self, paths: Sequence[str]) -> bytes:
        """Render up to four images into the grid and encode it as JPEG."""
        side = self.tile_size * GRID_SIZE
        canvas = Image.new("RGB", (side, side), BACKGROUND_COLOR)
        draw = ImageDraw.Draw(canvas)

        for position, path in enumerate(paths[:TILE_COUNT], start=1):
            x, y = tile_origin(position, self.tile_size)
            try:
                self._draw_image(canvas, path, x, y)
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load collage image {path!r}: {e}")
                self._draw_error_tile(draw, position, x, y)
                continue
            self._draw_badge(draw, str(position), x, y, BADGE_COLOR, BADGE_TEXT_COLOR)

        output = io.BytesIO()
        canvas.save(output, format="JPEG", quality=JPEG_QUALITY)
        return output.getvalue()

    def _draw_image(self, canvas: Image.Image, path: str, x: int, y: int) -> None:
        with Image.open(path) as source:
            image = source.convert("RGB")
        scale = min(self.tile_size / image.width, self.tile_size / image.height)
        width = max(1, round(image.width * scale))
        height = max(1, round(image.height * scale))
        image = image.resize((width, height), Image.Resampling.LANCZOS)
        canvas.paste(image, (x + (self.tile_size - width) // 2, y + (self.tile_size - height) // 2))

    def _draw_error_tile(self, draw: ImageDraw.ImageDraw, position: int, x: int, y: int) -> None:
        draw.rectangle([x, y, x + self.tile_size - 1, y + self.tile_size - 1], fill=ERROR_TILE_COLOR)
        self._draw_badge(draw, str(position), x, y, ERROR_BADGE_COLOR, ERROR_TEXT_COLOR)
        self._draw_centered_text(draw, "Error", x + self.tile_size // 2, y + self.tile_size // 2, ERROR_BADGE_COLOR)

    def _draw_badge(self, draw: ImageDraw.ImageDraw, label: str, x: int, y: int, fill, text_fill) -> None:
        left, top = x + BADGE_OFFSET, y + BADGE_OFFSET
        draw.rectangle([left, top, left + BADGE_SIZE, top + BADGE_SIZE], fill=fill)
        self._draw_centered_text(draw, label, left + BADGE_SIZE // 2, top + BADGE_SIZE // 2, text_fill)

    def _draw_centered_text(self, draw: ImageDraw.ImageDraw, text: str, cx: int, cy: int, fill) -> None:
        left, top, right, bottom = draw.textbbox((0, 0), text, font=self._font)
        draw.text((cx - (right - left) / 2 - left, cy - (bottom - top) / 2 - top), text, font=self._font, fill=fill)
