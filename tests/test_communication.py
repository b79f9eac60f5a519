from sim_config.ontology import CommunicationConfig
from sim_engine.communication import COMMUNICATION_PRESETS, CommunicationChannel


def test_disabled_link_always_delivers_without_counting():
    channel = CommunicationChannel(CommunicationConfig(packet_loss=100, enabled=False), seed=1)
    assert all(channel.transmit().delivered for _ in range(10))
    assert channel.loss_ratio == 0.0


def test_total_loss_drops_every_update():
    channel = CommunicationChannel(CommunicationConfig(packet_loss=100, enabled=True), seed=1)
    assert not any(channel.transmit().delivered for _ in range(10))
    assert channel.loss_ratio == 1.0


def test_delay_stays_within_jitter_band():
    channel = CommunicationChannel(CommunicationConfig(latency=50, jitter=10, enabled=True), seed=7)
    delays = [channel.transmit().delay_ms for _ in range(50)]
    assert all(40 <= d <= 60 for d in delays)
    assert channel.loss_ratio == 0.0


def test_same_seed_gives_same_losses():
    first = CommunicationChannel(COMMUNICATION_PRESETS["Very Poor Network"], seed=3)
    second = CommunicationChannel(COMMUNICATION_PRESETS["Very Poor Network"], seed=3)
    assert [first.transmit().delivered for _ in range(100)] == [second.transmit().delivered for _ in range(100)]
    assert first.loss_ratio == second.loss_ratio
