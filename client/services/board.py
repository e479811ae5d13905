from dataclasses import dataclass
from typing import Iterable, Optional

from client.schemas import Ladder, Snake, clamp_position


@dataclass(frozen=True)
class Resolution:
    candidate: int
    final: int
    ladder: Optional[Ladder] = None
    snake: Optional[Snake] = None

    @property
    def hit_hazard_head(self) -> bool:
        return self.snake is not None


def resolve_move(position: int, steps: int, ladders: Iterable[Ladder], snakes: Iterable[Snake],
                 board_size: int) -> Resolution:
    """Advance ``steps`` squares and apply at most one board hazard.

    Both hazard kinds are checked against the clamped candidate square only; a
    ladder wins over a hazard head on the same square and the square reached
    is never checked again.
    """
    candidate = clamp_position(position + steps, board_size)
    for ladder in ladders:
        if ladder.bottom == candidate:
            return Resolution(candidate=candidate, final=clamp_position(ladder.top, board_size), ladder=ladder)
    for snake in snakes:
        if snake.head == candidate:
            return Resolution(candidate=candidate, final=clamp_position(snake.tail, board_size), snake=snake)
    return Resolution(candidate=candidate, final=candidate)


def is_hazard_head(position: int, snakes: Iterable[Snake]) -> bool:
    return any(s.head == position for s in snakes)
