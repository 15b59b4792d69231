"""Builds the StreamSub components from a configuration dictionary."""

import logging
from dataclasses import dataclass

from .audio_extractor import ChunkExtractor
from .batch import BatchController
from .completion_client import CompletionClient, GenerateClient
from .insights import InsightGenerator
from .polisher import TextPolisher
from .streaming import StreamingTranscriptionController
from .subtitle_store import SubtitleStore
from .transcriber import WhisperEngine

logger = logging.getLogger(__name__)

@dataclass
class Services:
    """Every long-lived component, owned by whoever called build_services()."""
    extractor: ChunkExtractor
    engine: WhisperEngine
    store: SubtitleStore
    polisher: TextPolisher
    controller: StreamingTranscriptionController
    batch: BatchController
    insights: InsightGenerator

    def shutdown(self) -> None:
        self.controller.shutdown()

def build_services(config: dict) -> Services:
    """
    Instantiates the components. The speech model is not loaded here; the
    controller loads it on first use.

    Args:
        config: Configuration already merged with the defaults.
    """
    logger.info("Initializing StreamSub components...")
    device = config.get('device', 'cuda')

    extractor = ChunkExtractor(
        ffmpeg_path=config.get('ffmpeg_path'),
        ffprobe_path=config.get('ffprobe_path'),
        temp_dir=config.get('temp_dir')
    )
    engine = WhisperEngine(
        model_name=config.get('whisper_model', 'large-v3'),
        model_dir=config['model_dir'],
        device=device,
        fp16=config.get('whisper_fp16', True) if device == 'cuda' else False,
        language=config.get('language')
    )
    store = SubtitleStore(
        subtitle_dir=config['subtitle_dir'],
        completeness_tolerance=float(config['streaming']['completeness_tolerance_seconds'])
    )

    completion = config['completion']
    polish_client = CompletionClient(
        url=completion['url'],
        model=completion['model'],
        timeout=float(completion['timeout_seconds'])
    )
    fallback_cfg = completion['fallback']
    fallback_client = None
    if fallback_cfg.get('enabled'):
        fallback_client = GenerateClient(
            url=fallback_cfg['url'],
            model=fallback_cfg['model'],
            timeout=float(fallback_cfg['timeout_seconds']),
            context_tokens=int(fallback_cfg['context_tokens']),
            session=polish_client.session
        )
    polish = config['polish']
    polisher = TextPolisher(
        client=polish_client,
        prompt_template=polish['prompt'],
        max_chars=int(polish['max_chars']),
        temperature=float(polish['temperature']),
        max_tokens=int(polish['max_tokens']),
        fallback=fallback_client,
        fallback_max_tokens=int(fallback_cfg['max_tokens'])
    )

    controller = StreamingTranscriptionController(config, extractor, engine, polisher, store)
    batch = BatchController(controller, extractor, store, config)

    insights_cfg = config['insights']
    insight_client = CompletionClient(
        url=completion['url'],
        model=completion['model'],
        timeout=float(insights_cfg['timeout_seconds']),
        session=polish_client.session
    )
    insights = InsightGenerator(
        client=insight_client,
        summary_prompt=insights_cfg['summary_prompt'],
        relation_prompt=insights_cfg['relation_prompt'],
        summary_max_chars=int(insights_cfg['summary_max_chars']),
        relation_max_chars=int(insights_cfg['relation_max_chars']),
        temperature=float(insights_cfg['temperature']),
        max_tokens=int(insights_cfg['max_tokens'])
    )
    logger.info("Components initialized successfully.")
    return Services(
        extractor=extractor,
        engine=engine,
        store=store,
        polisher=polisher,
        controller=controller,
        batch=batch,
        insights=insights
    )
