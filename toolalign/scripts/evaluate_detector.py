#!/usr/bin/env python3
"""
Detector Evaluation Script

Scores the locator settings of a configuration file against a folder of
labeled screenshots, for one strategy or for all of them.
"""

import argparse
import dataclasses
import logging
import os
import sys

from toolalign.alignment.alignment_system import SystemConfig
from toolalign.alignment.nozzle_locator import DetectionStrategy
from toolalign.alignment.tuning import SavedTargets, compare_strategies, evaluate


def print_result(label: str, result):
    print(f"{label:<20} score={result.score:.3f} "
          f"avg_error={result.average_error:.3f}px "
          f"detections={len(result.errors)} misses={len(result.misses)} "
          f"failures={len(result.failures)}")


def main():
    """Main function."""
    parser = argparse.ArgumentParser(
        description="Evaluate nozzle detector settings on labeled images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Labeled images:
  Screenshots saved with a target are listed in saved_targets.json inside
  the image folder. Lower scores are better; every miss adds 1000.

Examples:
  %(prog)s --config system_config.json --images test_images
  %(prog)s --images test_images --strategy hough --debug-dir test_images/output
  %(prog)s --images test_images --all-strategies
        """
    )

    parser.add_argument(
        '--config', '-c',
        default=None,
        help='System configuration providing the vision settings (default: built-in defaults)'
    )

    parser.add_argument(
        '--images', '-i',
        default='test_images',
        help='Folder with labeled screenshots (default: test_images)'
    )

    parser.add_argument(
        '--strategy', '-s',
        choices=[strategy.value for strategy in DetectionStrategy],
        default=None,
        help='Override the detection strategy from the configuration'
    )

    parser.add_argument(
        '--all-strategies',
        action='store_true',
        help='Evaluate every detection strategy and rank them'
    )

    parser.add_argument(
        '--debug-dir',
        default=None,
        help='Write the processed image of every frame to this folder'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("Nozzle Detector Evaluation")
    print("=" * 50)

    config = SystemConfig()
    if args.config:
        if not os.path.exists(args.config):
            print(f"Error: Configuration file not found: {args.config}")
            return 1
        try:
            config = SystemConfig.from_json(args.config)
        except (OSError, ValueError, TypeError) as e:
            print(f"Error loading system configuration: {e}")
            return 1

    settings = config.vision
    if args.strategy:
        settings = dataclasses.replace(settings, strategy=DetectionStrategy(args.strategy))

    try:
        targets = SavedTargets.load(args.images)
    except (OSError, ValueError, TypeError) as e:
        print(f"Error loading labeled targets: {e}")
        return 1

    if not targets.targets:
        print(f"Error: No labeled images in {args.images}")
        return 1
    print(f"✓ {len(targets.targets)} labeled images in {args.images}\n")

    if args.all_strategies:
        for strategy, result in compare_strategies(args.images, settings):
            print_result(strategy.value, result)
        return 0

    result = evaluate(args.images, settings, targets, debug_dir=args.debug_dir)
    print_result(settings.strategy.value, result)
    for name in result.misses:
        print(f"  miss: {name}")
    for name in result.failures:
        print(f"  failed: {name}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
