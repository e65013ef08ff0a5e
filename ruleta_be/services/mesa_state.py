"""
In-memory round state for the roulette tables.
Everything here is mutated only by the owning MesaTable while it holds its lock.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..utils.roulette_helper import MesaType

PHASE_OPEN = 'open'
PHASE_CLOSING = 'closing'
PHASE_SPINNING = 'spinning'
PHASE_SETTLED = 'settled'
PHASE_ORDER = (PHASE_OPEN, PHASE_CLOSING, PHASE_SPINNING, PHASE_SETTLED)


class PhaseTransitionError(Exception):
    pass


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def format_mesa_id(mesa_type_id: str, sequence: int) -> str:
    return f"{mesa_type_id}-{sequence:06d}"


@dataclass(frozen=True)
class Bet:
    user_id: int
    username: str
    mesa_id: str
    sector_index: int
    stake: int
    placed_at: datetime
    reservation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'userId': self.user_id,
            'username': self.username,
            'mesaId': self.mesa_id,
            'sectorIndex': self.sector_index,
            'bet': self.stake,
            'placedAt': isoformat(self.placed_at),
        }


@dataclass(frozen=True)
class Payout:
    role: str  # 'main', 'left' or 'right'
    sector_index: int
    user_id: int
    username: str
    stake: int
    amount: int

    def to_dict(self) -> dict:
        return {
            'role': self.role,
            'sectorIndex': self.sector_index,
            'userId': self.user_id,
            'username': self.username,
            'bet': self.stake,
            'prize': self.amount,
        }


@dataclass(frozen=True)
class DrawResult:
    mesa_id: str
    mesa_type: str
    winning_sector_index: int
    drawn_at: datetime
    seed: Optional[str]
    source_descriptor: str
    secondary_left: Optional[int] = None
    secondary_right: Optional[int] = None
    payouts: Tuple[Payout, ...] = field(default_factory=tuple)
    total_staked: int = 0
    total_paid: int = 0
    house_earnings: int = 0

    def payout_for(self, role: str) -> Optional[Payout]:
        for payout in self.payouts:
            if payout.role == role:
                return payout
        return None

    def to_dict(self) -> dict:
        winners = {}
        for role in ('main', 'left', 'right'):
            payout = self.payout_for(role)
            winners[role] = payout.to_dict() if payout else None
        return {
            'mesaId': self.mesa_id,
            'type': self.mesa_type,
            'winningSectorIndex': self.winning_sector_index,
            'secondaryLeft': self.secondary_left,
            'secondaryRight': self.secondary_right,
            'winners': winners,
            'totalStaked': self.total_staked,
            'totalPaid': self.total_paid,
            'houseEarnings': self.house_earnings,
            'seed': self.seed,
            'source': self.source_descriptor,
            'drawnAt': isoformat(self.drawn_at),
        }


class Mesa:
    """One betting round of a mesa type."""

    def __init__(self, mesa_type: MesaType, sequence: int, opened_at: datetime,
                 server_seed: str, seed_hash: str):
        self.mesa_type = mesa_type
        self.sequence = sequence
        self.mesa_id = format_mesa_id(mesa_type.id, sequence)
        self.phase = PHASE_OPEN
        self.sectors: List[Optional[Bet]] = [None] * mesa_type.sector_count
        # sector_index -> user_id for bets whose balance reservation is in flight
        self.pending: Dict[int, int] = {}
        self.filled_count = 0
        self.opened_at = opened_at
        self.closes_at = opened_at + timedelta(seconds=mesa_type.round_duration_seconds)
        self.closed_at = None
        self.close_reason = None
        self.spin_started_at = None
        self.spin_ends_at = None
        self.signal_deadline = None
        self.settled_at = None
        self.voided = False
        self.version = 0
        self.seed_hash = seed_hash
        self.server_seed = server_seed
        self.outcome = None
        self.settling = False
        self.draw_result: Optional[DrawResult] = None

    def __repr__(self):
        return f"<Mesa {self.mesa_id} {self.phase} {self.filled_count}/{self.mesa_type.sector_count}>"

    @property
    def is_full(self) -> bool:
        return self.filled_count >= self.mesa_type.sector_count

    def bets(self) -> List[Bet]:
        return [bet for bet in self.sectors if bet is not None]

    def occupied_indices(self) -> List[int]:
        return [index for index, bet in enumerate(self.sectors) if bet is not None]

    def is_taken(self, sector_index: int) -> bool:
        return self.sectors[sector_index] is not None or sector_index in self.pending

    def holds_user(self, user_id: int) -> bool:
        if user_id in self.pending.values():
            return True
        return any(bet.user_id == user_id for bet in self.sectors if bet is not None)

    def touch(self):
        self.version += 1

    def occupy(self, bet: Bet):
        if self.phase != PHASE_OPEN:
            raise PhaseTransitionError(f"Cannot occupy a sector of {self.mesa_id} in phase {self.phase}")
        if self.sectors[bet.sector_index] is not None:
            raise PhaseTransitionError(f"Sector {bet.sector_index} of {self.mesa_id} is already occupied")
        self.sectors[bet.sector_index] = bet
        self.filled_count += 1
        self.touch()
        if self.filled_count != len(self.occupied_indices()):
            raise PhaseTransitionError(
                f"{self.mesa_id}: filled count {self.filled_count} does not match occupied sectors"
            )

    def transition(self, new_phase: str):
        """Moves the mesa forward. Skipping from closing to settled is only allowed for a voided round."""
        current_position = PHASE_ORDER.index(self.phase)
        new_position = PHASE_ORDER.index(new_phase)
        if new_position <= current_position:
            raise PhaseTransitionError(f"{self.mesa_id}: cannot move from {self.phase} to {new_phase}")
        if new_position - current_position > 1 and not (self.voided and self.phase == PHASE_CLOSING):
            raise PhaseTransitionError(f"{self.mesa_id}: cannot skip from {self.phase} to {new_phase}")
        self.phase = new_phase
        self.touch()

    def seconds_remaining(self, now: datetime) -> int:
        if self.phase != PHASE_OPEN:
            return 0
        return max(0, int((self.closes_at - now).total_seconds()))

    def snapshot(self, now: Optional[datetime] = None) -> dict:
        """Immutable view of the mesa for clients. Never exposes the unrevealed server seed."""
        sectors = []
        for index, bet in enumerate(self.sectors):
            if bet is None:
                sectors.append(None)
            else:
                sectors.append({'sectorIndex': index, 'userId': bet.user_id, 'username': bet.username, 'bet': bet.stake})
        data = {
            'mesaId': self.mesa_id,
            'type': self.mesa_type.id,
            'phase': self.phase,
            'sectors': sectors,
            'filledCount': self.filled_count,
            'sectorCount': self.mesa_type.sector_count,
            'stake': self.mesa_type.stake_per_sector,
            'openedAt': isoformat(self.opened_at),
            'closesAt': isoformat(self.closes_at),
            'closedAt': isoformat(self.closed_at),
            'spinStartedAt': isoformat(self.spin_started_at),
            'spinEndsAt': isoformat(self.spin_ends_at),
            'seedHash': self.seed_hash,
            'voided': self.voided,
            'closeReason': self.close_reason,
            'version': self.version,
            'result': self.draw_result.to_dict() if self.draw_result else None,
        }
        if now is not None:
            data['secondsRemaining'] = self.seconds_remaining(now)
        return data
