import json
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Tuple

DRAW_SOURCE_INTERNAL = 'internal_rng'
DRAW_SOURCE_EXTERNAL = 'external_signal'
DRAW_SOURCES = (DRAW_SOURCE_INTERNAL, DRAW_SOURCE_EXTERNAL)

# Secondary winners, keyed by label. Offsets are applied circularly to the main index.
SECONDARY_LABELS = ('left', 'right')

# Default tables: 15 sectors, 70% of the pot to the main winner, 10% to each neighbour.
DEFAULT_MESA_TYPES = [
    {
        "id": "150",
        "sector_count": 15,
        "stake_per_sector": 150,
        "main_payout_multiplier": "10.5",
        "secondary_payout_multiplier": "1.5",
        "min_fill_to_close": 15,
        "round_duration_seconds": 300,
        "spin_duration_seconds": 15,
        "secondary_offsets": [-1, 1],
        "draw_source": DRAW_SOURCE_INTERNAL,
    },
    {
        "id": "300",
        "sector_count": 15,
        "stake_per_sector": 300,
        "main_payout_multiplier": "10.5",
        "secondary_payout_multiplier": "1.5",
        "min_fill_to_close": 15,
        "round_duration_seconds": 300,
        "spin_duration_seconds": 15,
        "secondary_offsets": [-1, 1],
        "draw_source": DRAW_SOURCE_INTERNAL,
    },
]


@dataclass(frozen=True)
class MesaType:
    """Static layout of a roulette table type. Built once at startup, never mutated."""
    id: str
    sector_count: int
    stake_per_sector: int
    main_payout_multiplier: Decimal
    secondary_payout_multiplier: Decimal
    min_fill_to_close: int
    round_duration_seconds: int
    spin_duration_seconds: int = 15
    secondary_offsets: Tuple[int, ...] = field(default=(-1, 1))
    draw_source: str = DRAW_SOURCE_INTERNAL

    def __post_init__(self):
        if not self.id:
            raise ValueError("Mesa type id is required.")
        if self.sector_count < 1:
            raise ValueError(f"Mesa type {self.id}: sector_count must be at least 1.")
        if self.stake_per_sector <= 0:
            raise ValueError(f"Mesa type {self.id}: stake_per_sector must be positive.")
        if self.main_payout_multiplier < 0 or self.secondary_payout_multiplier < 0:
            raise ValueError(f"Mesa type {self.id}: payout multipliers cannot be negative.")
        if not 1 <= self.min_fill_to_close <= self.sector_count:
            raise ValueError(f"Mesa type {self.id}: min_fill_to_close must be between 1 and sector_count.")
        if self.round_duration_seconds <= 0:
            raise ValueError(f"Mesa type {self.id}: round_duration_seconds must be positive.")
        if self.spin_duration_seconds < 0:
            raise ValueError(f"Mesa type {self.id}: spin_duration_seconds cannot be negative.")
        if self.draw_source not in DRAW_SOURCES:
            raise ValueError(f"Mesa type {self.id}: unknown draw_source '{self.draw_source}'.")
        if len(self.secondary_offsets) > len(SECONDARY_LABELS):
            raise ValueError(f"Mesa type {self.id}: at most {len(SECONDARY_LABELS)} secondary offsets are supported.")

        # Each secondary sector must differ from the main sector and from each other.
        residues = [offset % self.sector_count for offset in self.secondary_offsets]
        if any(residue == 0 for residue in residues):
            raise ValueError(f"Mesa type {self.id}: a secondary offset lands on the main sector.")
        if len(set(residues)) != len(residues):
            raise ValueError(f"Mesa type {self.id}: secondary offsets overlap.")

    @classmethod
    def from_dict(cls, data: dict) -> 'MesaType':
        try:
            return cls(
                id=str(data['id']),
                sector_count=int(data['sector_count']),
                stake_per_sector=int(data['stake_per_sector']),
                main_payout_multiplier=Decimal(str(data['main_payout_multiplier'])),
                secondary_payout_multiplier=Decimal(str(data['secondary_payout_multiplier'])),
                min_fill_to_close=int(data.get('min_fill_to_close', data['sector_count'])),
                round_duration_seconds=int(data['round_duration_seconds']),
                spin_duration_seconds=int(data.get('spin_duration_seconds', 15)),
                secondary_offsets=tuple(int(o) for o in data.get('secondary_offsets', (-1, 1))),
                draw_source=data.get('draw_source', DRAW_SOURCE_INTERNAL),
            )
        except KeyError as e:
            raise ValueError(f"Mesa type definition is missing '{e.args[0]}'.") from e

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'sectorCount': self.sector_count,
            'stakePerSector': self.stake_per_sector,
            'mainPayoutMultiplier': str(self.main_payout_multiplier),
            'secondaryPayoutMultiplier': str(self.secondary_payout_multiplier),
            'minFillToClose': self.min_fill_to_close,
            'roundDurationSeconds': self.round_duration_seconds,
            'spinDurationSeconds': self.spin_duration_seconds,
            'secondaryOffsets': list(self.secondary_offsets),
            'drawSource': self.draw_source,
        }


def load_mesa_types(raw=None) -> Dict[str, MesaType]:
    """
    Builds the mesa type registry.
    raw: JSON string, list of dicts, or None for DEFAULT_MESA_TYPES.
    Returns a dict keyed by type id, in definition order.
    """
    if raw is None or raw == '':
        definitions = DEFAULT_MESA_TYPES
    elif isinstance(raw, str):
        try:
            definitions = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Mesa type configuration is not valid JSON: {e}") from e
    else:
        definitions = raw

    if not isinstance(definitions, list) or not definitions:
        raise ValueError("Mesa type configuration must be a non-empty list.")

    mesa_types = {}
    for definition in definitions:
        mesa_type = definition if isinstance(definition, MesaType) else MesaType.from_dict(definition)
        if mesa_type.id in mesa_types:
            raise ValueError(f"Duplicate mesa type id '{mesa_type.id}'.")
        mesa_types[mesa_type.id] = mesa_type
    return mesa_types


def is_valid_sector(mesa_type: MesaType, sector_index) -> bool:
    if isinstance(sector_index, bool) or not isinstance(sector_index, int):
        return False
    return 0 <= sector_index < mesa_type.sector_count


def secondary_sectors(mesa_type: MesaType, main_index: int) -> Dict[str, int]:
    """
    Secondary winner positions for a main winning index, wrapping around the wheel.
    With the default offsets on a 15 sector table, main 0 gives left 14 and right 1.
    """
    return {
        label: (main_index + offset) % mesa_type.sector_count
        for label, offset in zip(SECONDARY_LABELS, mesa_type.secondary_offsets)
    }


def calculate_payout(stake: int, multiplier: Decimal) -> int:
    """Prize in whole currency units, rounded down."""
    if stake <= 0 or multiplier <= 0:
        return 0
    amount = (Decimal(stake) * Decimal(multiplier)).to_integral_value(rounding=ROUND_DOWN)
    return int(amount)


def pot_distribution(mesa_type: MesaType) -> dict:
    """Share of a full table's pot paid to each role, as percentages. Used for display only."""
    pot = Decimal(mesa_type.stake_per_sector * mesa_type.sector_count)
    main = Decimal(calculate_payout(mesa_type.stake_per_sector, mesa_type.main_payout_multiplier))
    secondary = Decimal(calculate_payout(mesa_type.stake_per_sector, mesa_type.secondary_payout_multiplier))
    paid = main + secondary * len(mesa_type.secondary_offsets)
    return {
        'main': float(main * 100 / pot),
        'secondary': float(secondary * 100 / pot),
        'house': float((pot - paid) * 100 / pot),
    }
