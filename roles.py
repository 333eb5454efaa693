"""Secret role assignment and round outcome attribution.

Nothing here touches the store: the functions take players and mutate or read
their ``role`` field only, so they can be exercised with plain ``Player``
objects and a seeded ``random.Random``.
"""
import random
from dataclasses import dataclass
from typing import Iterable, List, Optional

from models import DEFAULT_ROLE, DISTINGUISHED_ROLES, Player, Role, WinningSide


def assign_roles(players: List[Player], rng: Optional[random.Random] = None) -> List[Player]:
    """Give each active player a role and return them in the shuffled order.

    The first ``min(3, len(players))`` players of a random permutation receive
    the distinguished roles (themselves randomly permuted); everybody else is a
    ``cittadino``.
    """
    rng = rng or random.SystemRandom()
    shuffled_players = list(players)
    rng.shuffle(shuffled_players)
    shuffled_roles = list(DISTINGUISHED_ROLES)
    rng.shuffle(shuffled_roles)

    for index, player in enumerate(shuffled_players):
        if index < len(shuffled_roles):
            player.role = shuffled_roles[index]
        else:
            player.role = DEFAULT_ROLE
    return shuffled_players


@dataclass(frozen=True)
class RoundOutcome:
    player_id: str
    account_ref: Optional[str]
    role: Role
    won: bool


def player_won(role: Optional[Role], winning_side: WinningSide) -> bool:
    if winning_side == WinningSide.ASSASSINO:
        return role == Role.ASSASSINO
    return role != Role.ASSASSINO


def round_outcomes(players: Iterable[Player], winning_side: WinningSide) -> List[RoundOutcome]:
    # waiting players and players without a role sat the round out
    outcomes = []
    for player in players:
        if player.is_waiting or player.role is None:
            continue
        outcomes.append(RoundOutcome(
            player_id=player.player_id,
            account_ref=player.account_ref,
            role=player.role,
            won=player_won(player.role, winning_side),
        ))
    return outcomes
