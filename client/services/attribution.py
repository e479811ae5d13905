from typing import Optional, Sequence

from client.schemas import PlayerState


def attribute_mover(players: Sequence[PlayerState], dice: int, final_position: int) -> Optional[str]:
    """Guess who produced a move result that does not name its player.

    ``players`` must be the state *before* the move is applied. Falls back to
    the current turn holder; returns None when neither resolves.
    """
    for p in players:
        if p.position + dice == final_position:
            return p.id
    for p in players:
        if p.is_turn:
            return p.id
    return None
