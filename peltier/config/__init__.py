from peltier.config.io_map import IOMap, ActuatorConfig, ThermocoupleConfig
from peltier.config.setpoints import Setpoints

__all__ = ["IOMap", "ActuatorConfig", "ThermocoupleConfig", "Setpoints"]
