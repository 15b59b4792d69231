"""Command-Line Interface handler for StreamSub."""

import argparse
import dataclasses
import json
import logging
import os
import sys
from concurrent.futures import CancelledError
from typing import Optional

from .config_loader import ConfigLoader
from .log_setup import parse_log_level, setup_logging
from .factory import build_services, Services
from .models import SessionState, TranscriptionSession
from .exceptions import StreamSubError, ConfigurationError

logger = logging.getLogger(__name__) # Get logger for this module

def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments shared by the single-file and the batch command."""
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to the configuration YAML file. Built-in defaults are used when omitted."
    )
    parser.add_argument(
        "--temp-dir",
        default=None, # Default taken from config file
        help="Override the directory for intermediate audio files."
    )
    parser.add_argument(
        "--subtitle-dir",
        default=None,
        help="Override the directory where transcripts are stored."
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level for console and file output."
    )
    parser.add_argument(
        "--device",
        default=None, # Default taken from config
        choices=["cuda", "cpu"],
        help="Override the processing device (cuda or cpu) specified in config."
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Override the Whisper model name (e.g. large-v3, medium)."
    )
    parser.add_argument(
        "--language",
        default=None,
        help="Override the transcription language (e.g. zh, en)."
    )

def load_configuration(args: argparse.Namespace, init_log_file: str, default_log_file: str) -> dict:
    """
    Sets up logging, loads and merges the configuration and applies CLI overrides.

    Exits the process with status 1 when the configuration cannot be loaded.
    """
    log_level = parse_log_level(args.log_level)
    # Temporarily setup basic logging to catch config loading errors
    setup_logging(log_level=log_level, log_dir='logs', log_file=init_log_file)

    loader = ConfigLoader()
    try:
        raw_config = loader.load_config(args.config) if args.config else {}
        config = loader.with_defaults(raw_config)
    except ConfigurationError as e:
        logger.critical(f"Failed to load configuration from {args.config}: {e}", exc_info=True)
        sys.exit(1)
    except FileNotFoundError:
        logger.critical(f"Configuration file not found: {args.config}")
        sys.exit(1)

    setup_logging(
        log_level=log_level,
        log_dir=config.get('log_dir', 'logs'),
        log_file=config.get('log_file') or default_log_file
    )
    logger.info("Logging re-configured with settings from config file.")

    overrides = {
        'temp_dir': args.temp_dir,
        'subtitle_dir': args.subtitle_dir,
        'device': args.device,
        'whisper_model': args.model,
        'language': args.language,
    }
    for key, value in overrides.items():
        if value:
            if key in ('temp_dir', 'subtitle_dir'):
                value = os.path.expanduser(value)
            logger.info(f"Overriding {key} from config with CLI argument: {value}")
            config[key] = value
    return config

def write_json(path: str, payload) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(dataclasses.asdict(payload), f, ensure_ascii=False, indent=2)
    logger.info(f"Wrote {path}")

class CLIHandler:
    """Parses arguments and runs a streaming transcription of one audio file."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            description="StreamSub: resumable, AI-polished transcription of long audio files.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter # Show defaults in help
        )
        parser.add_argument(
            "-a", "--audio",
            required=True,
            help="Path to the input audio file."
        )
        add_common_arguments(parser)
        parser.add_argument(
            "--restart",
            action="store_true",
            help="Delete any saved transcript and transcribe from the beginning."
        )
        parser.add_argument(
            "--summary",
            action="store_true",
            help="Write an AI summary (JSON) next to the transcript when done."
        )
        parser.add_argument(
            "--relations",
            action="store_true",
            help="Write the people/relations graph (JSON) next to the transcript when done."
        )
        return parser

    def run(self, argv: Optional[list] = None) -> None:
        """Parses arguments, sets up logging, loads config, and runs the transcription."""
        args = self.parser.parse_args(argv)
        config = load_configuration(args, 'streamsub_init.log', 'streamsub.log')

        if not os.path.isfile(args.audio):
            logger.critical(f"Input audio file not found or is not a file: {args.audio}")
            sys.exit(1)

        services = None
        try:
            services = build_services(config)
            if args.restart:
                services.store.delete(args.audio)

            session = self._transcribe(services, args.audio)
            if session.state is not SessionState.COMPLETE:
                logger.error(f"Transcription did not complete: {session.error or session.state.value}")
                sys.exit(1)

            base_path = os.path.splitext(services.store.path_for(args.audio))[0]
            if args.summary:
                write_json(f"{base_path}.summary.json", services.insights.generate_summary(session.full_transcript))
            if args.relations:
                write_json(f"{base_path}.relations.json", services.insights.extract_relations(session.full_transcript))
            logger.info("StreamSub finished successfully.")
            sys.exit(0)

        except StreamSubError as e:
            logger.error(f"A StreamSub error occurred: {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            logger.warning("Process interrupted by user (Ctrl+C). Saved progress will be resumed next time.")
            if services is not None:
                services.controller.cancel()
            sys.exit(1)
        except Exception as e:
            logger.critical(f"An unexpected critical error occurred at the top level: {e}", exc_info=True)
            sys.exit(2) # Use a different exit code for unexpected crashes
        finally:
            if services is not None:
                services.shutdown()

    def _transcribe(self, services: Services, audio_path: str) -> TranscriptionSession:
        handle = services.controller.start(audio_path)
        try:
            session = handle.ready.result()
            logger.info(f"Ready for playback: {len(session.subtitles)} subtitles available so far")
        except CancelledError:
            logger.warning("Session was cancelled before it became ready")
        except Exception as e:
            # Recorded on the session as well; the caller decides from its state
            logger.error(f"Session failed before it became ready: {e}")
        return handle.done.result()

def main() -> None:
    CLIHandler().run()
