"""Mock image generator for development and tests.

Returns a real (Pillow-rendered) PNG data URI so the batch upload and
storage paths run end-to-end without calling an AI model.
"""

import itertools

import structlog

from atelier.utils.image import image_to_data_uri, render_placeholder

logger = structlog.get_logger()


class MockImageGenerator:
    model = "mock-generator"

    def __init__(self) -> None:
        self._counter = itertools.count()

    async def generate(self, prompt: str, reference_images: list[str]) -> str:
        index = next(self._counter)
        caption = (prompt.strip() or "Design")[:32]
        logger.debug("mock_generate", index=index, num_reference_images=len(reference_images))
        return image_to_data_uri(render_placeholder(caption, index))
