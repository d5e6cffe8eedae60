#!/usr/bin/env python3
"""
Tool Head Alignment Startup Script

This script starts the alignment system from a JSON configuration file and
optionally runs one calibration session until it completes.
"""

import argparse
import logging
import os
import sys
import time

from toolalign.alignment.alignment_system import AlignmentSystem, SystemConfig
from toolalign.alignment.auto_offset import SessionKind, TickOutcome


def start_session(system: AlignmentSystem, mode: str, tool) -> bool:
    """Start the session selected on the command line."""
    controller = system.controller
    if mode == 'single':
        return controller.start_single_tool(tool)
    if mode == 'all':
        return controller.start_all_tools()
    if mode == 'repeatability':
        return controller.start_repeatability_test(tool)
    if mode == 'homing':
        return controller.start_homing_test(tool)
    return True


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Tool Head Nozzle Alignment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration files:
  The system reads a JSON configuration file with camera, printer, vision
  and auto_offset sections. Missing values fall back to defaults.

Examples:
  %(prog)s --config system_config.json --mode single --tool 1
  %(prog)s --config system_config.json --mode all --verbose
  %(prog)s --config system_config.json --validate-only
        """
    )

    parser.add_argument(
        '--config', '-c',
        default=os.path.join('config', 'system_config.json'),
        help='Path to system configuration file (default: config/system_config.json)'
    )

    parser.add_argument(
        '--mode', '-m',
        choices=['none', 'single', 'all', 'repeatability', 'homing'],
        default='none',
        help='Calibration session to run (default: none, only monitor)'
    )

    parser.add_argument(
        '--tool', '-t',
        type=int,
        default=None,
        help='Tool for single, repeatability and homing sessions (default: active tool)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--validate-only',
        action='store_true',
        help='Only validate the configuration, do not start the system'
    )

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("Tool Head Nozzle Alignment")
    print("=" * 50)

    print(f"Loading system configuration from: {args.config}")

    if not os.path.exists(args.config):
        print(f"Error: Configuration file not found: {args.config}")
        return 1

    try:
        config = SystemConfig.from_json(args.config)
    except (OSError, ValueError, TypeError) as e:
        print(f"Error loading system configuration: {e}")
        return 1

    print("✓ System configuration loaded successfully")
    print(f"  Camera: {config.camera_resolution[0]}x{config.camera_resolution[1]} @ {config.camera_fps}fps")
    print(f"  Printer: {config.printer_url}")
    print(f"  Strategy: {config.vision.strategy.value}, {config.vision.pixels_per_mm} px/mm")
    print(f"  Tools: {config.auto_offset.num_tools}, target offset {config.auto_offset.target_max_offset}mm")

    if args.validate_only:
        print("\nValidation complete (--validate-only specified)")
        return 0

    print("\nStarting alignment system...")
    system = AlignmentSystem(config)
    if not system.start_system():
        print("✗ Failed to start system")
        return 1
    print("✓ System started successfully")

    if args.tool is not None and system.controller.active_tool != args.tool:
        system.controller.pickup_tool(args.tool)

    if not start_session(system, args.mode, args.tool):
        print(f"✗ Failed to start {args.mode} session: {system.controller.errors[-1]}")
        system.stop_system()
        return 1

    tick_interval = 1.0 / config.tick_rate
    status_interval = 5.0
    last_status_time = 0.0

    try:
        print("\n" + "=" * 50)
        print("System running. Press Ctrl+C to stop.\n")

        while True:
            outcome = system.tick()
            if outcome is TickOutcome.COMPLETED:
                print(f"✓ {args.mode} session complete")
                report = system.controller.last_report_path
                if report:
                    print(f"  Report: {report}")
            if args.mode != 'none' and system.controller.kind is SessionKind.IDLE:
                break

            current_time = time.time()
            if current_time - last_status_time >= status_interval:
                status = system.get_system_status()
                stats = status['statistics']
                guess, confidence = system.get_current_estimate()

                print(f"Status: Camera={status['camera_running']}, "
                      f"Proc={status['processing_running']}, "
                      f"Session={status['controller']['session']}")
                print(f"Stats: Frames={stats['frames_processed']}, "
                      f"Detections={stats['detections_received']}, "
                      f"Misses={stats['detection_misses']}")
                if guess is not None and confidence is not None:
                    print(f"Estimate: ({guess[0]:.1f}, {guess[1]:.1f}) r={guess[2]:.1f}, "
                          f"conf={confidence[0]:.3f}")
                print("-" * 30)
                last_status_time = current_time

            time.sleep(tick_interval)

    except KeyboardInterrupt:
        print("\nShutting down system...")

    system.stop_system()
    print("✓ System stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
