"""contentflow CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from contentflow.config import DEFAULT_CONFIG_FILE, SAMPLE_CONFIG, load_config
from contentflow.workflow.definitions import WorkflowDefinitionRegistry
from contentflow.workflow.exceptions import ConfigurationError
from contentflow.workflow.templates import BUILTIN_QUALITY_GATES


def _init_config(config_path: Path, force: bool = False) -> int:
    """Write a sample contentflow.yaml."""
    if config_path.exists() and not force:
        print(f"Error: {config_path} already exists", file=sys.stderr)
        print("Use --force to overwrite it.", file=sys.stderr)
        return 1

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(SAMPLE_CONFIG)
    print(f"Wrote sample configuration to {config_path}")
    print()
    print("Next steps:")
    print(f"  1. Review {config_path}")
    print("  2. Point collaborators.generator and collaborators.reviewer at your providers")
    print(f"  3. Run: contentflow serve --config {config_path}")
    return 0


def _validate_config(config_path: Path) -> int:
    """Load a config file and check every workflow definition in it."""
    try:
        config = load_config(config_path)
        definitions = config.build_workflows()
    except (FileNotFoundError, ConfigurationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    gate_ids = {gate.id for gate in config.quality_gates}
    if config.load_builtin_templates:
        gate_ids.update(make_gate().id for make_gate in BUILTIN_QUALITY_GATES)

    failures = 0
    for definition in definitions:
        errors = WorkflowDefinitionRegistry.validate(definition)
        for stage in definition.stages:
            gate_id = stage.configuration.get("gate_id")
            if gate_id and gate_id not in gate_ids:
                errors.append(f"stage '{stage.id}' references unknown quality gate '{gate_id}'")
        if errors:
            failures += 1
            print(f"✗ {definition.id}")
            for error in errors:
                print(f"    - {error}")
        else:
            print(f"✓ {definition.id} ({len(definition.stages)} stages)")

    if failures:
        print(f"\n{failures} of {len(definitions)} workflow(s) invalid", file=sys.stderr)
        return 1
    print(f"\n{len(definitions)} workflow(s), {len(config.quality_gates)} quality gate(s) OK")
    return 0


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="contentflow",
        description="contentflow: workflow orchestration for AI-assisted content production",
    )

    subparsers = parser.add_subparsers(dest="command")

    # contentflow init
    init_parser = subparsers.add_parser("init", help="Write a sample configuration file")
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_FILE),
        help=f"Path to write (default: {DEFAULT_CONFIG_FILE})",
    )
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    # contentflow validate
    validate_parser = subparsers.add_parser("validate", help="Validate a configuration file")
    validate_parser.add_argument(
        "config",
        type=Path,
        nargs="?",
        default=Path(DEFAULT_CONFIG_FILE),
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})",
    )

    # contentflow serve
    serve_parser = subparsers.add_parser("serve", help="Start the contentflow API server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=Path(DEFAULT_CONFIG_FILE),
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")
    serve_parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config)",
    )

    args = parser.parse_args(argv)

    if args.command == "init":
        sys.exit(_init_config(args.config, args.force))

    if args.command == "validate":
        sys.exit(_validate_config(args.config))

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Error: {args.config} not found", file=sys.stderr)
        print("Run 'contentflow init' to create one, or pass --config", file=sys.stderr)
        sys.exit(1)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    log_level = (args.log_level or config.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    import uvicorn

    from contentflow.server import create_app

    app = create_app(config_path=args.config, config=config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
