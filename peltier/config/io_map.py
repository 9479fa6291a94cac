"""
PLC Address Map for the GMT PLC Container Cooler
=================================================
Maps the physical points on the PLC to the logical actuators and
the thermocouple used by the control logic.

Hardware Reference:
  - GMT PLC with GMX-20UA thermocouple module
  - Thermocouple at holding register 2026 (user address 42027),
    stored as signed tenths of a degree (300 = 30.0 °C)
  - Peltier 1 on coil 2, Peltier 2 on coil 4

Register 2026 quirk:
  The PLC rejects single-register reads of 2026 but serves it inside
  any sufficiently large contiguous block. The primary read covers
  2026-2035 (offset 0), the fallback 2020-2029 (offset 6).
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ActuatorConfig:
    """Single Peltier output definition."""
    id: int
    name: str
    coil_address: int

    def __post_init__(self):
        if self.id < 1:
            raise ValueError(f"Actuator id must be positive: {self.id}")
        if not 0 <= self.coil_address <= 0xFFFF:
            raise ValueError(
                f"Coil address out of range for {self.name}: {self.coil_address}"
            )


@dataclass(frozen=True)
class ThermocoupleConfig:
    """Thermocouple register and the batch blocks that can serve it."""
    address: int = 2026
    block_size: int = 10
    primary_start: int = 2026
    fallback_start: int = 2020
    scale: float = 10.0           # Raw value = temperature x scale
    signed: bool = True

    def __post_init__(self):
        if not 1 <= self.block_size <= 125:
            raise ValueError(f"Block size must be 1..125: {self.block_size}")
        if self.scale == 0:
            raise ValueError("Thermocouple scale must be non-zero")
        for start in (self.primary_start, self.fallback_start):
            if not start <= self.address < start + self.block_size:
                raise ValueError(
                    f"Block starting at {start} does not contain register "
                    f"{self.address}"
                )
            if start + self.block_size - 1 > 0xFFFF:
                raise ValueError(f"Block starting at {start} overruns 0xFFFF")

    @property
    def primary_offset(self) -> int:
        return self.address - self.primary_start

    @property
    def fallback_offset(self) -> int:
        return self.address - self.fallback_start

    def blocks(self) -> list:
        """Blocks to try, in order: (label, start, offset)."""
        return [
            ("batch-primary", self.primary_start, self.primary_offset),
            ("batch-fallback", self.fallback_start, self.fallback_offset),
        ]


@dataclass
class IOMap:
    """
    Complete address map for the container cooler.

    Built once at startup and validated: actuator ids and coil
    addresses must be unique, and both thermocouple blocks must
    contain the thermocouple register.
    """

    thermocouple: ThermocoupleConfig = field(default_factory=ThermocoupleConfig)

    actuators: dict = field(default_factory=lambda: {
        1: ActuatorConfig(id=1, name="Peltier 1", coil_address=2),
        2: ActuatorConfig(id=2, name="Peltier 2", coil_address=4),
    })

    def __post_init__(self):
        seen_coils = set()
        for key, act in self.actuators.items():
            if key != act.id:
                raise ValueError(f"Actuator key {key} does not match id {act.id}")
            if act.coil_address in seen_coils:
                raise ValueError(f"Duplicate coil address {act.coil_address}")
            seen_coils.add(act.coil_address)

    @classmethod
    def from_list(cls, actuators: list, thermocouple: ThermocoupleConfig = None) -> "IOMap":
        """Build a map from a list of actuator dicts ({id, name, coil_address})."""
        configs = {}
        for entry in actuators:
            act = ActuatorConfig(
                id=int(entry["id"]),
                name=str(entry.get("name", f"Peltier {entry['id']}")),
                coil_address=int(entry["coil_address"]),
            )
            if act.id in configs:
                raise ValueError(f"Duplicate actuator id {act.id}")
            configs[act.id] = act
        return cls(
            thermocouple=thermocouple or ThermocoupleConfig(),
            actuators=configs,
        )

    def actuator(self, actuator_id: int) -> ActuatorConfig:
        try:
            return self.actuators[actuator_id]
        except KeyError:
            raise ValueError(f"Unknown actuator id: {actuator_id}") from None

    @property
    def actuator_ids(self) -> list:
        return sorted(self.actuators)
