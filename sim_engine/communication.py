"""
Simulated link quality between a device and its consumers.

When enabled, every tick's update is lost with probability packet_loss / 100
and the consumer keeps reading the previously published registers. Latency
and jitter are computed per delivery for display; nothing is actually sent.
"""

import random
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from sim_config.ontology import CommunicationConfig

COMMUNICATION_PRESETS = {
    "Perfect Network": CommunicationConfig(latency=0, packet_loss=0, jitter=0, enabled=True),
    "Good Network": CommunicationConfig(latency=10, packet_loss=0.1, jitter=2, enabled=True),
    "Average Network": CommunicationConfig(latency=50, packet_loss=1, jitter=10, enabled=True),
    "Poor Network": CommunicationConfig(latency=150, packet_loss=5, jitter=30, enabled=True),
    "Very Poor Network": CommunicationConfig(latency=300, packet_loss=15, jitter=100, enabled=True),
}


@dataclass
class Delivery:
    delivered: bool
    delay_ms: float = 0.0


class CommunicationChannel:
    def __init__(self, config: Optional[CommunicationConfig] = None, seed: Optional[int] = None):
        self.config = config or CommunicationConfig()
        self.rng = random.Random(seed)
        self.sent = 0
        self.dropped = 0

    def reseed(self, seed: Optional[int]):
        self.rng.seed(seed)
        self.sent = 0
        self.dropped = 0

    def transmit(self) -> Delivery:
        if not self.config.enabled:
            return Delivery(delivered=True)

        self.sent += 1
        if self.config.packet_loss > 0 and self.rng.random() * 100 < self.config.packet_loss:
            self.dropped += 1
            logger.debug(f"Update dropped (packet loss {self.config.packet_loss}%, {self.dropped}/{self.sent} lost)")
            return Delivery(delivered=False)

        delay = max(0.0, self.config.latency + self.rng.uniform(-self.config.jitter, self.config.jitter))
        logger.debug(f"Update delivered after {delay:.1f} ms")
        return Delivery(delivered=True, delay_ms=delay)

    @property
    def loss_ratio(self) -> float:
        return self.dropped / self.sent if self.sent else 0.0
