"""Command-line entry point for batch processing of audio folders."""

import argparse
import logging
import os
import sys

# Progress bar library
from tqdm import tqdm

from .cli import add_common_arguments, load_configuration
from .factory import build_services
from .batch import find_audio_files, transcript_status
from .models import BatchJob, BatchMode, BatchTask, SubtitleStatus, TaskStatus
from .utils import format_clock
from .exceptions import StreamSubError

logger = logging.getLogger(__name__)

def _create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="StreamSub Batch: transcribe every audio file in one or more folders.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        "-i", "--input-dir",
        required=True,
        action="append",
        help="Directory containing audio files. May be given more than once."
    )
    add_common_arguments(parser)
    parser.add_argument(
        "--mode",
        default=BatchMode.FULL.value,
        choices=[mode.value for mode in BatchMode],
        help="'initialize' transcribes only the opening seconds of each file; 'full' transcribes everything."
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="In full mode, delete saved transcripts and start each file from scratch."
    )
    parser.add_argument(
        "--pending-only",
        action="store_true",
        help="Only process files that have no saved transcript yet."
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="List how much of each file is transcribed (none, partial, complete) and exit."
    )
    return parser

def report_status(files, services) -> None:
    """Logs one line per file with its transcript status and coverage."""
    counts = {status: 0 for status in SubtitleStatus}
    for path in files:
        info = transcript_status(path, services.extractor, services.store)
        counts[info.status] += 1
        if info.coverage is not None:
            detail = f"{info.coverage:.0%} ({format_clock(info.end_time)} / {format_clock(info.duration)})"
        elif info.end_time is not None:
            detail = f"up to {format_clock(info.end_time)}"
        else:
            detail = "-"
        logger.info(f"{info.status.value:<8} {detail:<24} {path}")
    logger.info(f"Transcripts: {counts[SubtitleStatus.COMPLETE]} complete, "
                f"{counts[SubtitleStatus.PARTIAL]} partial, {counts[SubtitleStatus.NONE]} missing")

def run_batch_processing(argv=None) -> None:
    """Parses arguments, sets up, and runs the batch transcription."""
    args = _create_parser().parse_args(argv)
    config = load_configuration(args, 'streamsub_batch_init.log', 'streamsub_batch.log')

    services = None
    try:
        services = build_services(config)

        # --- Find Audio Files ---
        try:
            files = find_audio_files(args.input_dir, without_subtitles_only=args.pending_only, store=services.store)
        except (FileNotFoundError, ValueError) as e:
            logger.critical(f"Input directory error: {e}")
            sys.exit(1)
        if not files:
            logger.warning(f"No audio files to process in {', '.join(args.input_dir)}. Exiting.")
            sys.exit(0)

        if args.status:
            report_status(files, services)
            sys.exit(0)

        mode = BatchMode(args.mode)
        with tqdm(total=len(files), unit="file", desc="Starting Batch") as pbar:
            def on_update(job: BatchJob, task: BatchTask) -> None:
                pbar.set_description(f"{task.status.value}: {os.path.basename(task.source_file)[:30]}")
                pbar.n = job.completed_count + job.status_counts()[TaskStatus.FAILED]
                pbar.set_postfix(progress=f"{job.overall_progress:.0%}")
                pbar.refresh()

            try:
                job = services.batch.run(files, mode=mode, force=args.force, on_update=on_update)
            except KeyboardInterrupt:
                logger.warning("Batch process interrupted by user (Ctrl+C). Exiting.")
                services.batch.cancel()
                sys.exit(1)

        counts = job.status_counts()
        logger.info(f"Completed: {counts[TaskStatus.COMPLETED]}/{len(files)}, "
                    f"skipped: {counts[TaskStatus.SKIPPED]}, failed: {counts[TaskStatus.FAILED]}")
        sys.exit(1 if counts[TaskStatus.FAILED] else 0)

    except StreamSubError as e:
        logger.critical(f"Failed to initialize StreamSub components: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if services is not None:
            services.shutdown()
