import pytest

from sim_config.ontology import ParameterProfile, ParameterRange, ProfileType
from sim_engine.profiles import ProfileGenerator


def profile(kind, duration=100.0, pattern=(1.0,), noise=0.0, low=20.0, high=80.0):
    return ParameterProfile(id="p", name="p", type=kind, duration=duration,
                            parameters={"temperature": ParameterRange(low, high, list(pattern))},
                            noise_level=noise)


def test_ramp_up_is_linear_without_noise():
    gen = ProfileGenerator(seed=1)
    p = profile(ProfileType.RAMP_UP)
    assert gen.sample(p, "temperature", 0) == pytest.approx(20.0)
    assert gen.sample(p, "temperature", 50) == pytest.approx(50.0)
    assert gen.sample(p, "temperature", 100) == pytest.approx(80.0)


def test_elapsed_time_is_clamped_to_duration():
    gen = ProfileGenerator()
    p = profile(ProfileType.RAMP_UP)
    assert gen.sample(p, "temperature", 250) == pytest.approx(80.0)
    assert gen.sample(p, "temperature", -5) == pytest.approx(20.0)


def test_steady_state_uses_mean_pattern_weight():
    gen = ProfileGenerator()
    assert gen.sample(profile(ProfileType.STEADY_STATE, pattern=[1]), "temperature", 10) == pytest.approx(80.0)
    assert gen.sample(profile(ProfileType.STEADY_STATE, pattern=[0, 0.5]), "temperature", 10) == pytest.approx(35.0)
    assert gen.sample(profile(ProfileType.STEADY_STATE, pattern=[]), "temperature", 10) == pytest.approx(50.0)


def test_transient_spike_peaks_mid_duration():
    gen = ProfileGenerator()
    p = profile(ProfileType.TRANSIENT_SPIKE)
    assert gen.sample(p, "temperature", 50) == pytest.approx(80.0)
    assert gen.sample(p, "temperature", 0) == pytest.approx(20.0, abs=1e-6)
    assert 20.0 < gen.sample(p, "temperature", 55) < 80.0


def test_cyclic_uses_fixed_period():
    gen = ProfileGenerator(cycle_period_seconds=60.0)
    p = profile(ProfileType.CYCLIC, duration=300)
    assert gen.sample(p, "temperature", 0) == pytest.approx(20.0)
    assert gen.sample(p, "temperature", 30) == pytest.approx(80.0)
    assert gen.sample(p, "temperature", 60) == pytest.approx(20.0)


def test_custom_interpolates_pattern_weights():
    gen = ProfileGenerator()
    p = profile(ProfileType.CUSTOM, pattern=[0, 1, 0])
    assert gen.sample(p, "temperature", 25) == pytest.approx(50.0)
    assert gen.sample(p, "temperature", 50) == pytest.approx(80.0)
    assert gen.sample(p, "temperature", 100) == pytest.approx(20.0)


def test_noise_is_seeded_and_clamped():
    p = profile(ProfileType.STEADY_STATE, pattern=[0.5], noise=1.0)
    first = [ProfileGenerator(seed=7).sample(p, "temperature", t) for t in range(5)]
    again = [ProfileGenerator(seed=7).sample(p, "temperature", t) for t in range(5)]
    assert first == again

    gen = ProfileGenerator(seed=3)
    values = [gen.sample(p, "temperature", t) for t in range(200)]
    assert all(20.0 <= v <= 80.0 for v in values)
    assert len(set(values)) > 1


def test_sample_profile_covers_every_parameter():
    p = ParameterProfile(id="p", type=ProfileType.RAMP_UP, duration=10,
                         parameters={"temperature": ParameterRange(0, 10), "power": ParameterRange(0, 100)})
    values = ProfileGenerator().sample_profile(p, 5)
    assert values == {"temperature": pytest.approx(5.0), "power": pytest.approx(50.0)}
