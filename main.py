#!/usr/bin/env python3
"""
Device Simulation Engine — CLI Runner
======================================
Build (or import) a configuration → run a profile in step mode → export
history and configuration artifacts.

Usage:
  # Default configuration, startup profile, 120 one-second ticks
  python main.py --output ./output

  # Normal operation with anomaly detection trained on the first 30 ticks
  python main.py --output ./output --profile normal-operation --train 30 --anomaly

  # Inject a fault manually at tick 40 over a poor network link
  python main.py --output ./output --fault supply-power-loss --fault-at 40 --network "Poor Network"

  # Run an exported configuration
  python main.py --output ./output --config ./output/simulation_config.json
"""

import sys
import copy
import time
import argparse
from pathlib import Path
from datetime import datetime
from typing import Optional

from loguru import logger

from sim_config.errors import SimulationError
from sim_config.ontology import AlarmAction, AlarmRule
from sim_config.store import ConfigurationStore, DefaultConfigurationBuilder
from sim_engine.communication import COMMUNICATION_PRESETS
from sim_engine.history import export_csv, export_json
from sim_engine.scheduler import EngineConfig, FakeClock, SimulationEngine


def configure_logging(verbose: bool = False):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO",
               format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}")


def log_email(rule: AlarmRule, action: AlarmAction):
    """Stand-in mail collaborator: the CLI has no SMTP transport."""
    recipient = action.config.get("to", "operators")
    logger.info(f"Email to {recipient}: [{rule.severity.value.upper()}] {rule.name or rule.id} ({rule.condition})")


def load_configuration(config_path: Optional[str]) -> ConfigurationStore:
    if config_path:
        store = ConfigurationStore()
        store.import_file(config_path)
        return store
    return DefaultConfigurationBuilder().build()


def run_simulation(engine: SimulationEngine, profile_id: str, ticks: int, train_ticks: int = 0,
                   fault_id: Optional[str] = None, fault_at: int = 0) -> int:
    """Step the engine through up to `ticks` ticks; returns the number actually run."""
    logger.info("━" * 60)
    logger.info(f"Running profile '{profile_id}' for up to {ticks} ticks")
    logger.info("━" * 60)

    engine.start(profile_id)
    completed = 0
    for tick in range(ticks):
        if train_ticks and tick == train_ticks:
            engine.train()
        if fault_id and tick == fault_at:
            engine.trigger_fault(fault_id)

        if engine.step() is None:
            break
        completed += 1
        if engine.is_halted:
            logger.warning(f"Run halted by a shutdown action at tick {tick}")
            break

    if engine.is_running:
        engine.stop()
    return completed


def main(argv: Optional[list[str]] = None) -> dict:
    parser = argparse.ArgumentParser(
        description="Device Simulation Engine: profiles, interactions, faults, alarms and anomaly scoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --output ./output                          # startup profile, 120 ticks
  python main.py --output ./output --profile load-spike     # 60 s transient spike
  python main.py --output ./output --train 30 --anomaly     # baseline + detection
        """,
    )

    parser.add_argument("--output", "-o", type=str, default="./output",
                        help="Output directory for exported artifacts (default: ./output)")
    parser.add_argument("--config", "-c", type=str, default=None,
                        help="Import a JSON configuration instead of the built-in defaults")
    parser.add_argument("--profile", "-p", type=str, default="startup",
                        help="Profile id to run (default: startup)")
    parser.add_argument("--ticks", "-t", type=int, default=120,
                        help="Maximum number of ticks (default: 120)")
    parser.add_argument("--interval", "-i", type=float, default=1.0,
                        help="Simulated seconds per tick (default: 1.0)")
    parser.add_argument("--seed", "-s", type=int, default=42,
                        help="Random seed for reproducibility (default: 42)")
    parser.add_argument("--train", type=int, default=0,
                        help="Train the anomaly baseline on the first N ticks")
    parser.add_argument("--anomaly", action="store_true",
                        help="Enable anomaly event detection")
    parser.add_argument("--sensitivity", type=float, default=None,
                        help="Anomaly sensitivity within [0.1, 1] (default: configuration value)")
    parser.add_argument("--fault", type=str, default=None,
                        help="Fault scenario id to trigger manually")
    parser.add_argument("--fault-at", type=int, default=0,
                        help="Tick at which --fault is triggered (default: 0)")
    parser.add_argument("--network", type=str, default=None, choices=sorted(COMMUNICATION_PRESETS),
                        help="Simulated communication preset")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Log every tick")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    output_path = Path(args.output)
    output_path.mkdir(parents=True, exist_ok=True)

    logger.info("╔════════════════════════════════════════════════════════╗")
    logger.info("║      Device Simulation Engine                         ║")
    logger.info("║      Profiles · Faults · Alarms · Anomaly Scoring     ║")
    logger.info("╚════════════════════════════════════════════════════════╝")

    start_time = time.time()

    try:
        store = load_configuration(args.config)
        if args.network:
            store.set_communication_config(copy.deepcopy(COMMUNICATION_PRESETS[args.network]))
        if args.anomaly or args.sensitivity is not None:
            ml_config = copy.deepcopy(store.ml_config)
            ml_config.enabled = ml_config.enabled or args.anomaly
            if args.sensitivity is not None:
                ml_config.sensitivity = args.sensitivity
            store.set_ml_config(ml_config)

        engine = SimulationEngine(
            store=store,
            config=EngineConfig(update_interval=args.interval, step_mode=True, seed=args.seed),
            clock=FakeClock(start=datetime(2025, 1, 1)),
            email_sender=log_email,
        )
        ticks = run_simulation(engine, args.profile, args.ticks, args.train, args.fault, args.fault_at)
    except SimulationError as exc:
        logger.error(f"Simulation failed: {exc}")
        raise SystemExit(1) from exc

    history = engine.history
    export_json(history, output_path / "history.json")
    export_csv(history, output_path / "history.csv")
    store.export_json(str(output_path / "simulation_config.json"))
    store.export_xml(str(output_path / "simulation_config.xml"))

    alarm_ids = sorted({a for p in history for a in p.alarms})
    fault_ids = sorted({f for p in history for f in p.faults})
    stats = {
        "ticks": ticks,
        "elapsed": engine.elapsed,
        "final_registers": engine.registers,
        "alarms_seen": alarm_ids,
        "faults_seen": fault_ids,
        "actions_dispatched": len(engine.action_events),
        "anomalies": len(engine.anomalies),
        "packet_loss_ratio": engine.channel.loss_ratio,
        "status": engine.status.value,
    }

    logger.info("")
    logger.info("━" * 60)
    logger.info("SIMULATION COMPLETE")
    logger.info("━" * 60)
    logger.info(f"  Time elapsed:       {time.time() - start_time:.1f}s")
    logger.info(f"  Ticks:              {ticks} ({engine.elapsed:g}s simulated)")
    logger.info(f"  Alarms raised:      {', '.join(alarm_ids) or 'none'}")
    logger.info(f"  Faults activated:   {', '.join(fault_ids) or 'none'}")
    logger.info(f"  Actions dispatched: {stats['actions_dispatched']}")
    logger.info(f"  Anomaly events:     {stats['anomalies']}")
    if engine.channel.config.enabled:
        logger.info(f"  Updates lost:       {engine.channel.dropped}/{engine.channel.sent} ({stats['packet_loss_ratio']:.0%})")
    logger.info(f"  Device status:      {stats['status']}")
    logger.info(f"  Output directory:   {output_path.absolute()}")
    for f in sorted(output_path.glob("*")):
        logger.info(f"  {f.name: <40} {f.stat().st_size: >10,} B")

    return stats


if __name__ == "__main__":
    main()
