"""Command line entry point: `audio-analyzer <command>`."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import Config, configure_logging, configure_threads

logger = logging.getLogger('audio-analyzer')


def _serve(config: Config, args) -> int:
    import uvicorn

    from .api import create_app

    app = create_app(config=config, consume=args.consume)
    uvicorn.run(app, host=args.host, port=args.port, log_level=config.log_level.lower())
    return 0


def _consume(config: Config, args) -> int:
    from .context import AnalyzerContext
    from .service import QueueConsumer

    context = AnalyzerContext.create(config)
    try:
        consumer = QueueConsumer(
            context.build_dispatcher(),
            context.queue,
            poll_timeout=config.poll_timeout,
            control_client=context.redis,
        )
        consumer.start()
    finally:
        context.close()
    return 0


def _analyze(config: Config, args) -> int:
    """Run one job through a real worker process without Redis and print the result."""
    from .aggregator import ResultAggregator
    from .errors import AnalysisError
    from .extraction import WorkerOptions
    from .inference import load_models
    from .models import Job
    from .process import ProcessSpawner
    from .supervisor import JobSupervisor

    supervisor = JobSupervisor(
        ProcessSpawner(WorkerOptions.from_config(config)),
        ResultAggregator(load_models(config.model_dir)),
        config.job_timeout_seconds,
    )
    try:
        result = supervisor.run(Job.create(args.source_ref))
    except AnalysisError as e:
        print(json.dumps({'error': e.to_dict()}, indent=2))
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def _init_models(config: Config, args) -> int:
    from .inference import load_models

    try:
        models = load_models(config.model_dir)
    except Exception as e:
        logger.error(f"Error initializing models: {e}")
        return 1
    logger.info(f"Models initialized successfully! ({', '.join(models)})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='audio-analyzer',
        description='Audio feature extraction and mood inference over isolated worker processes',
    )
    commands = parser.add_subparsers(dest='command', required=True)

    serve = commands.add_parser('serve', help='run the HTTP API with an in-process dispatcher')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=3000)
    serve.add_argument('--consume', action='store_true',
                       help='also consume the durable Redis queue in this process')
    serve.set_defaults(handler=_serve)

    consume = commands.add_parser('consume', help='consume jobs from the durable Redis queue')
    consume.set_defaults(handler=_consume)

    analyze = commands.add_parser('analyze', help='analyze one source and print the result')
    analyze.add_argument('source_ref', help='URL or path relative to MUSIC_PATH')
    analyze.set_defaults(handler=_analyze)

    init_models = commands.add_parser('init-models', help='load every model and exit')
    init_models.set_defaults(handler=_init_models)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = Config.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    # Thread limits must be exported before essentia/tensorflow is imported
    configure_threads(config.threads_per_worker)
    configure_logging(config.log_level)
    return args.handler(config, args)


if __name__ == '__main__':
    sys.exit(main())
