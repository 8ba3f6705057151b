from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class SignatureOverlay:
    """A signature image placed on the rendered page, positions in percent"""

    image_url: str
    position_x: float
    position_y: float


class DocumentRenderer(ABC):
    """Turns rendered contract text and signature overlays into a binary document"""

    @abstractmethod
    def render(self, text: str, overlays: List[SignatureOverlay]) -> bytes:
        """Render the document; stateless from the caller's point of view"""
