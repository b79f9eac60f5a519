"""
Profile Generator
=================
Time-indexed base-value synthesis for profile-governed registers.

Each pattern maps the elapsed run time `t` (seconds, 0 ≤ t ≤ duration) to a
fraction of the parameter's [min, max] envelope; Gaussian noise scaled by the
profile's noise level is added and the result is clamped back into the
envelope:

  steady-state     constant at the (clamped) mean pattern weight
  ramp-up          linear min → max over the duration
  transient-spike  near min, bell-shaped excursion to max at mid-duration
  cyclic           raised-cosine oscillation, fixed period (not duration)
  custom           pattern weights interpolated piecewise-linearly
"""

import math
import random
from typing import Optional

from sim_config.ontology import ParameterProfile, ParameterRange, ProfileType


class ProfileGenerator:
    """Generates base register values from a parameter profile."""

    def __init__(self, seed: Optional[int] = None, noise_sigma_fraction: float = 0.25,
                 spike_width_fraction: float = 0.1, cycle_period_seconds: float = 60.0):
        self.rng = random.Random(seed)
        self.noise_sigma_fraction = noise_sigma_fraction
        self.spike_width_fraction = spike_width_fraction
        self.cycle_period_seconds = cycle_period_seconds

    def reseed(self, seed: Optional[int]):
        self.rng.seed(seed)

    def base_fraction(self, profile: ParameterProfile, rng: ParameterRange, t: float) -> float:
        """Position of the noiseless value inside the envelope (0 = min, 1 = max)."""
        duration = profile.duration
        t = max(0.0, min(duration, t))
        progress = t / duration if duration > 0 else 1.0

        if profile.type == ProfileType.RAMP_UP:
            return progress

        if profile.type == ProfileType.STEADY_STATE:
            if not rng.pattern:
                return 0.5
            weight = sum(rng.pattern) / len(rng.pattern)
            return max(0.0, min(1.0, weight))

        if profile.type == ProfileType.TRANSIENT_SPIKE:
            center = duration / 2
            width = max(duration * self.spike_width_fraction, 1e-9)
            return math.exp(-((t - center) / width) ** 2)

        if profile.type == ProfileType.CYCLIC:
            period = self.cycle_period_seconds
            return (1 - math.cos(2 * math.pi * t / period)) / 2

        if profile.type == ProfileType.CUSTOM:
            weights = rng.pattern
            if not weights:
                return 0.5
            if len(weights) == 1:
                return weights[0]
            position = progress * (len(weights) - 1)
            index = min(int(position), len(weights) - 2)
            frac = position - index
            return weights[index] + (weights[index + 1] - weights[index]) * frac

        return 0.5

    def sample(self, profile: ParameterProfile, parameter: str, t: float) -> float:
        """Base value plus noise for one profile-governed parameter, clamped to its envelope."""
        rng = profile.parameters[parameter]
        value = rng.min_value + rng.span * self.base_fraction(profile, rng, t)

        if profile.noise_level > 0 and rng.span > 0:
            value += self.rng.gauss(0, rng.span * profile.noise_level * self.noise_sigma_fraction)

        return max(rng.min_value, min(rng.max_value, value))

    def sample_profile(self, profile: ParameterProfile, t: float) -> dict[str, float]:
        """Values for every parameter the profile governs, in declaration order."""
        return {name: self.sample(profile, name, t) for name in profile.parameters}
