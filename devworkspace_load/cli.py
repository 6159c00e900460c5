#!/usr/bin/env python3
"""
Command line entry point for the DevWorkspace Operator load test.

Exit codes: 0 when every threshold passed, 99 when a threshold was crossed,
1 when interrupted, 2 on configuration or fatal errors.
"""
import argparse
import logging
import os
import shutil
import sys

from prometheus_client import CollectorRegistry, start_http_server

from . import metrics as m
from .config import load_config, LoadTestSettings
from .errors import ConfigError, LoadTestError
from .report import create_output_dir, save_results, text_summary
from .runner import LoadTestRunner

EXIT_OK = 0
EXIT_INTERRUPTED = 1
EXIT_ERROR = 2
EXIT_THRESHOLDS_FAILED = 99

LOG_FILE = 'load_test.log'

logger = logging.getLogger("devworkspace-load-test")


def configure_logging(level=logging.INFO, log_file=LOG_FILE):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file)
        ]
    )


def parse_arguments(argv=None, config=None):
    """Parse command line arguments; defaults come from the environment."""
    config = load_config() if config is None else config
    parser = argparse.ArgumentParser(
        description='Load test the DevWorkspace Operator by creating and deleting DevWorkspaces',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument('--kube-api', type=str, default=None, help='Kubernetes API server URL (KUBE_API)')
    parser.add_argument('--max-vus', type=int, default=config["MAX_VUS"], help='Maximum concurrent virtual users')
    parser.add_argument('--duration', type=int, default=config["TEST_DURATION_IN_MINUTES"],
                        help='Test duration in minutes')
    parser.add_argument('--ready-timeout', type=int, default=config["DEV_WORKSPACE_READY_TIMEOUT_IN_SECONDS"],
                        help='Seconds to wait for a DevWorkspace to become ready')
    parser.add_argument('--separate-namespaces', action='store_true', default=config["SEPARATE_NAMESPACES"],
                        help='Create every DevWorkspace in its own Namespace')
    parser.add_argument('--operator-namespace', type=str, default=config["DWO_NAMESPACE"],
                        help='Namespace the DevWorkspace Operator runs in')
    parser.add_argument('--load-test-namespace', type=str, default=config["LOAD_TEST_NAMESPACE"],
                        help='Namespace for DevWorkspaces when namespaces are shared')
    parser.add_argument('--devworkspace-link', type=str, default=config["DEVWORKSPACE_LINK"],
                        help='URL of a DevWorkspace JSON manifest to use instead of the built-in one')
    parser.add_argument('--create-automount-resources', action='store_true',
                        default=config["CREATE_AUTOMOUNT_RESOURCES"],
                        help='Provision an automount ConfigMap and Secret before the run')
    parser.add_argument('--poll-interval', type=int, default=config["POLL_INTERVAL"],
                        help='Seconds between readiness polls')
    parser.add_argument('--max-cpu-millicores', type=int, default=config["MAX_OPERATOR_CPU_MILLICORES"],
                        help='Operator CPU threshold in millicores')
    parser.add_argument('--max-memory-mi', type=int, default=config["MAX_OPERATOR_MEMORY_MI"],
                        help='Operator memory threshold in Mi')
    parser.add_argument('--timeout', type=float, default=config["REQUEST_TIMEOUT"],
                        help='Per-request timeout in seconds')
    parser.add_argument('--metrics-port', type=int, default=config["METRICS_PORT"],
                        help='If > 0, expose Prometheus metrics on this port')
    parser.add_argument('--output-dir', type=str, default=config["OUTPUT_DIR"],
                        help='Output directory for results')
    parser.add_argument('--debug', action='store_true', default=False, help='Enable debug logging')

    return parser.parse_args(argv)


def build_settings(args, config=None) -> LoadTestSettings:
    config = dict(load_config() if config is None else config)
    if args.kube_api:
        config["KUBE_API"] = args.kube_api
    settings = LoadTestSettings.from_config(config).with_overrides(
        max_vus=args.max_vus,
        duration_minutes=args.duration,
        ready_timeout_seconds=args.ready_timeout,
        separate_namespaces=args.separate_namespaces,
        operator_namespace=args.operator_namespace,
        load_test_namespace=args.load_test_namespace,
        devworkspace_link=args.devworkspace_link,
        create_automount_resources=args.create_automount_resources,
        poll_interval=max(1, args.poll_interval),
        max_cpu_millicores=args.max_cpu_millicores,
        max_memory_bytes=args.max_memory_mi * 1024 * 1024,
        request_timeout=args.timeout,
        metrics_port=args.metrics_port,
        output_dir=args.output_dir,
    )
    return settings.validate()


def log_settings(settings: LoadTestSettings):
    logger.info("Starting DevWorkspace Operator Load Test")
    logger.info("=======================================")
    logger.info(f"API server: {settings.api_server}")
    logger.info(f"Max VUs: {settings.max_vus}")
    logger.info(f"Duration: {settings.duration_minutes} minutes")
    logger.info(f"DevWorkspace ready timeout: {settings.ready_timeout_seconds} seconds")
    logger.info(f"Separate namespaces: {settings.separate_namespaces}")
    logger.info(f"Load test namespace: {settings.load_test_namespace}")
    logger.info(f"Operator namespace: {settings.operator_namespace}")
    logger.info(f"External DevWorkspace: {settings.devworkspace_link or 'none (built-in manifest)'}")
    logger.info(f"Automount resources: {settings.create_automount_resources}")
    logger.info(f"Operator limits: cpu={settings.max_cpu_millicores}m, "
                f"memory={settings.max_memory_bytes // (1024 * 1024)}Mi")
    logger.info("=======================================")


def main(argv=None):
    """Parse arguments, run the load test and report."""
    args = parse_arguments(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = build_settings(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_ERROR
    log_settings(settings)

    registry = None
    if settings.metrics_port > 0:
        registry = CollectorRegistry()
        start_http_server(settings.metrics_port, registry=registry)
        logger.info(f"Load test metrics exporter started on port {settings.metrics_port}")

    collector = m.MetricsCollector(prometheus_registry=registry)
    runner = LoadTestRunner(settings, collector=collector)

    try:
        result = runner.run()
    except KeyboardInterrupt:
        logger.info("Test interrupted by user. Cleaning up...")
        runner.stop_event.set()
        runner.final_cleanup()
        return EXIT_INTERRUPTED
    except LoadTestError as e:
        logger.error(f"Test failed with error: {e}")
        logger.exception(e)
        runner.stop_event.set()
        return EXIT_ERROR

    output_dir = create_output_dir(settings.output_dir)
    save_results(output_dir, collector, result, include_html=not settings.in_cluster)
    try:
        shutil.copy(LOG_FILE, os.path.join(output_dir, LOG_FILE))
    except OSError as e:
        logger.error(f"Could not copy log file: {e}")

    print(text_summary(collector.snapshot(m.SUMMARY_METRICS), result.threshold_results))

    for threshold_result in result.threshold_results:
        if not threshold_result.passed:
            logger.error(
                f"Threshold crossed: {threshold_result.threshold.metric} {threshold_result.threshold.expression} "
                f"(observed {threshold_result.observed:.2f})"
            )
    logger.info(f"Results saved to: {output_dir}")

    if not result.thresholds_passed:
        return EXIT_THRESHOLDS_FAILED
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
