import hmac
import hashlib
import os
from dataclasses import dataclass
from typing import Optional, Sequence

from ruleta_be.utils.roulette_helper import DRAW_SOURCE_INTERNAL, DRAW_SOURCE_EXTERNAL

FALLBACK_DESCRIPTOR = f"{DRAW_SOURCE_INTERNAL}:fallback"


@dataclass(frozen=True)
class DrawOutcome:
    winning_sector_index: int
    seed: Optional[str]
    source_descriptor: str


def generate_server_seed() -> str:
    return os.urandom(32).hex()


def hash_server_seed(server_seed_hex: str) -> str:
    """Public commitment for a server seed, published when the mesa opens."""
    return hashlib.sha256(server_seed_hex.encode('utf-8')).hexdigest()


def pick_index(server_seed_hex: str, mesa_id: str, count: int) -> int:
    """
    Uniform index in [0, count) derived from HMAC-SHA256(server_seed, "<mesa_id>:<round>").
    Digests above the largest multiple of count are rejected and the round bumped,
    so no index is favoured by modulo bias.
    """
    if count <= 0:
        raise ValueError("Cannot pick from an empty set.")

    space = 2 ** 256
    limit = space - (space % count)
    draw_round = 0
    while True:
        digest = hmac.new(
            bytes.fromhex(server_seed_hex),
            msg=f"{mesa_id}:{draw_round}".encode('utf-8'),
            digestmod=hashlib.sha256
        ).hexdigest()
        value = int(digest, 16)
        if value < limit:
            return value % count
        draw_round += 1


class DrawSource:
    """Decides the winning sector of a mesa once it starts spinning."""
    name = None
    awaits_signal = False

    def draw(self, mesa_id: str, occupied_indices: Sequence[int], server_seed: str) -> DrawOutcome:
        raise NotImplementedError


class InternalRNGDrawSource(DrawSource):
    """Provably fair draw among the occupied sectors, using the seed committed at open."""
    name = DRAW_SOURCE_INTERNAL

    def draw(self, mesa_id, occupied_indices, server_seed, descriptor=None):
        candidates = sorted(occupied_indices)
        if not candidates:
            raise ValueError(f"Mesa {mesa_id} has no occupied sectors to draw from.")
        position = pick_index(server_seed, mesa_id, len(candidates))
        return DrawOutcome(
            winning_sector_index=candidates[position],
            seed=server_seed,
            source_descriptor=descriptor or self.name,
        )


class ExternalSignalDrawSource(InternalRNGDrawSource):
    """
    Winning sector comes from a physical wheel, reported by a trusted service.
    The internal RNG is only used when no signal arrives in time.
    """
    name = DRAW_SOURCE_EXTERNAL
    awaits_signal = True

    def from_signal(self, sector_index: int, submitted_by: Optional[str] = None,
                    signal_id: Optional[str] = None) -> DrawOutcome:
        descriptor = self.name if not submitted_by else f"{self.name}:{submitted_by}"
        return DrawOutcome(winning_sector_index=sector_index, seed=signal_id, source_descriptor=descriptor)

    def draw(self, mesa_id, occupied_indices, server_seed, descriptor=None):
        return super().draw(mesa_id, occupied_indices, server_seed, descriptor=descriptor or FALLBACK_DESCRIPTOR)


def build_draw_source(name: str) -> DrawSource:
    if name == DRAW_SOURCE_INTERNAL:
        return InternalRNGDrawSource()
    if name == DRAW_SOURCE_EXTERNAL:
        return ExternalSignalDrawSource()
    raise ValueError(f"Unknown draw source '{name}'")
