from dataclasses import dataclass, replace
from enum import Enum


class PairingMode(str, Enum):
    SINGLE = "single"
    DOUBLE_CONTIGUOUS = "double-contiguous"
    DOUBLE_COVER = "double-cover"


@dataclass(frozen=True)
class PagingPolicy:
    """
    Maps an anchor page to the page(s) shown side by side.

    Page numbers are 1-based. `total_pages` is None while the document length
    is unknown; in that case nothing is clamped upward.

    Cover mode shows page 1 alone, then pairs (2,3), (4,5), ...; the last page
    is shown alone when it has no partner.
    """

    mode: PairingMode = PairingMode.DOUBLE_CONTIGUOUS
    total_pages: int | None = None

    @property
    def is_double(self) -> bool:
        return self.mode != PairingMode.SINGLE

    @property
    def step(self) -> int:
        return 2 if self.is_double else 1

    def with_total(self, total_pages: int | None) -> "PagingPolicy":
        return replace(self, total_pages=total_pages)

    def with_mode(self, mode: PairingMode) -> "PagingPolicy":
        return replace(self, mode=PairingMode(mode))

    def clamp(self, page: int) -> int:
        page = max(1, page)
        if self.total_pages is not None:
            page = min(page, max(1, self.total_pages))
        return page

    def left_page(self, index: int) -> int:
        if self.mode != PairingMode.DOUBLE_COVER or index <= 1:
            return index
        return index if index % 2 == 0 else index - 1

    def right_page(self, index: int) -> int | None:
        if self.mode == PairingMode.SINGLE:
            return None
        left = self.left_page(index)
        if self.mode == PairingMode.DOUBLE_COVER and left == 1:
            return None
        right = left + 1
        if self.total_pages is not None and right > self.total_pages:
            return None
        return right

    def pages(self, index: int) -> tuple[int, ...]:
        right = self.right_page(index)
        left = self.left_page(index)
        return (left,) if right is None else (left, right)

    def align(self, page: int) -> int:
        """Anchor of the spread that contains `page`."""
        return self.left_page(self.clamp(page))

    def last_anchor(self, current: int = 1) -> int | None:
        """Final spread reached by stepping forward from `current`."""
        if self.total_pages is None:
            return None
        if self.mode == PairingMode.DOUBLE_CONTIGUOUS:
            current = self.clamp(current)
            return current + (self.total_pages - current) // 2 * 2
        return self.align(self.total_pages)

    def is_last(self, anchor: int) -> bool:
        if self.total_pages is None:
            return False
        return self.pages(anchor)[-1] >= self.total_pages

    def next_anchor(self, current: int) -> int:
        current = self.align(current)
        if self.is_last(current):
            return current
        if self.mode == PairingMode.DOUBLE_COVER and current == 1:
            candidate = 2
        else:
            candidate = current + self.step
        return self.align(candidate)

    def previous_anchor(self, current: int) -> int:
        current = self.align(current)
        if current <= 1:
            return 1
        return self.align(current - self.step)

    def describe(self, anchor: int) -> str:
        shown = self.pages(anchor)
        label = f"Page {shown[0]}" if len(shown) == 1 else f"Page {shown[0]}–{shown[1]}"
        if self.mode == PairingMode.DOUBLE_COVER and len(shown) == 1:
            if shown[0] == 1:
                label += " (Front Cover)"
            elif self.total_pages is not None and shown[0] == self.total_pages and shown[0] > 1:
                label += " (Rear Cover)"
        if self.total_pages is not None:
            label += f" of {self.total_pages}"
        return label
