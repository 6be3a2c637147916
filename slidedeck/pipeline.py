"""Slide extraction pipeline orchestration."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from slidedeck.download import (
    MediaHandle,
    acquire_media,
    download_media,
    needs_ytdlp,
    resolve_ytdlp_command,
)
from slidedeck.errors import MissingToolError, NoFramesExtractedError
from slidedeck.events import (
    MonotonicProgress,
    NullObserver,
    SerializedObserver,
    SlideChunk,
    SlideMeta,
    SlidesLog,
    SlidesObserver,
    Status,
    TimelineReady,
)
from slidedeck.lock import SlidesLockRegistry
from slidedeck.manifest import (
    prepare_slides_dir,
    read_slides_cache_if_valid,
    resolve_slides_dir,
    write_slides_manifest,
)
from slidedeck.models import (
    AutoTune,
    SlideExtractionResult,
    SlideImage,
    SlideSettings,
    SlideSource,
)
from slidedeck.ocr import run_ocr_on_slides
from slidedeck.process import find_executable
from slidedeck.scenes import SceneDetection, detect_slide_timestamps
from slidedeck.settings import EngineConfig
from slidedeck.slides import extract_frames, rename_slides_with_timestamps
from slidedeck.timeline import apply_min_duration_filter, select_timestamps

logger = logging.getLogger(__name__)

# Progress checkpoints (percent)
P_PREPARE = 2
P_FETCH_VIDEO = 6
P_DOWNLOAD_VIDEO = 35
P_DETECT_SCENES = 60
P_EXTRACT_FRAMES = 90
P_OCR = 99
P_FINAL = 100


@dataclass(frozen=True)
class ResolvedTools:
    """External executables for one run."""

    ffmpeg: str
    ffprobe: Optional[str]
    tesseract: Optional[str]
    ytdlp_command: Optional[list[str]]


def _count_detail(completed: int, total: int) -> Optional[str]:
    return f"({completed}/{total})" if total > 0 else None


class SlideExtractor:
    """Extract slide decks from video sources.

    Owns the lock registry, so concurrent ``extract`` calls for the same
    output directory run one after another in arrival order.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config or EngineConfig.from_env(env)
        self._env = env
        self._locks = SlidesLockRegistry()

    def extract(
        self,
        source: SlideSource,
        settings: SlideSettings,
        no_cache: bool = False,
        observer: Optional[SlidesObserver] = None,
    ) -> SlideExtractionResult:
        """Run the full pipeline for one source, or return a valid cached result.

        Args:
            source: Resolved slide source.
            settings: Validated slide settings.
            no_cache: Ignore an existing manifest and re-extract.
            observer: Receives timeline, slide, status and log events.

        Returns:
            The extraction result, also persisted as ``slides.json``.

        Raises:
            MissingToolError: If ffmpeg, tesseract (with OCR) or yt-dlp is missing.
            NoSlidesDetectedError: If no candidate timestamps exist.
            NoFramesExtractedError: If no frame survived extraction.
            AcquisitionError, ProcessError: If media could not be obtained.
        """
        observer = SerializedObserver(observer or NullObserver())
        slides_dir = resolve_slides_dir(settings.output_dir, source.source_id)

        with self._locks.hold(
            str(slides_dir),
            on_wait=lambda: observer.handle(Status("Slides: queued")),
        ):
            if not no_cache:
                cached = read_slides_cache_if_valid(source, settings)
                if cached is not None:
                    observer.handle(TimelineReady(cached))
                    return cached
            return self._run(source, settings, slides_dir, observer)

    def resolve_tools(self, source: SlideSource, settings: SlideSettings) -> ResolvedTools:
        """Locate required executables, failing before any work is done.

        Raises:
            MissingToolError: With a remediation hint in the message.
        """
        ffmpeg = find_executable(self.config.ffmpeg_path or "ffmpeg", self._env)
        if not ffmpeg:
            raise MissingToolError("Missing ffmpeg (install ffmpeg or add it to PATH).")
        ffprobe = find_executable(self.config.ffprobe_path or "ffprobe", self._env)

        tesseract = find_executable(self.config.tesseract_path or "tesseract", self._env)
        if settings.ocr and not tesseract:
            raise MissingToolError(
                "Missing tesseract OCR (install tesseract or skip --slides-ocr)."
            )

        ytdlp_command = None
        if needs_ytdlp(source):
            ytdlp_command = resolve_ytdlp_command(self.config.ytdlp_path, self._env)
            if not ytdlp_command:
                target = "YouTube" if source.kind == "youtube" else "remote videos"
                raise MissingToolError(
                    f"Slides for {target} require yt-dlp (set YT_DLP_PATH or install yt-dlp)."
                )

        return ResolvedTools(
            ffmpeg=ffmpeg,
            ffprobe=ffprobe,
            tesseract=tesseract,
            ytdlp_command=ytdlp_command,
        )

    def _run(
        self,
        source: SlideSource,
        settings: SlideSettings,
        slides_dir: Path,
        observer: SlidesObserver,
    ) -> SlideExtractionResult:
        config = self.config
        progress = MonotonicProgress(observer)
        log = SlidesLog(observer)
        warnings: list[str] = []
        workers = config.workers
        total_started_at = time.monotonic()
        log(
            f"pipeline=acquire(sequential)->scene-detect(parallel:{workers})"
            f"->extract-frames(parallel:{workers})->ocr(parallel:{workers})"
        )

        tools = self.resolve_tools(source, settings)
        ocr_available = tools.tesseract is not None
        ocr_enabled = settings.ocr and ocr_available

        started_at = time.monotonic()
        prepare_slides_dir(slides_dir)
        log.timing("prepare output dir", started_at)
        progress.report("preparing source", P_PREPARE)

        def on_download(percent: float, detail: Optional[str]) -> None:
            ratio = max(0.0, min(1.0, percent / 100))
            progress.report(
                "downloading video",
                P_FETCH_VIDEO + ratio * (P_DOWNLOAD_VIDEO - P_FETCH_VIDEO),
                detail,
            )

        def acquire(purpose: str) -> MediaHandle:
            started = time.monotonic()
            if purpose == "detect":
                progress.report("fetching video", P_FETCH_VIDEO)
            handle = acquire_media(
                source, purpose, config, tools.ytdlp_command, warnings, on_download
            )
            kind = "stream" if handle.is_stream else "file"
            log.timing(f"acquire media (purpose={purpose}, {kind})", started)
            return handle

        meta = SlideMeta(
            slides_dir=str(slides_dir),
            source_url=source.url,
            source_id=source.source_id,
            source_kind=source.kind,
            ocr_available=ocr_available,
        )

        media = acquire("detect")
        extract_media: Optional[MediaHandle] = None
        try:
            detection = self._detect(media, settings, tools, progress, log)
            self._collect(warnings, detection)

            if not detection.timestamps and media.is_stream:
                self._warn(
                    warnings,
                    "Scene detection found no changes on the stream; "
                    "downloading video and retrying",
                )
                media.cleanup()
                started_at = time.monotonic()
                media = download_media(source, config, tools.ytdlp_command, on_download)
                log.timing("download video (detect+extract)", started_at)
                detection = self._detect(media, settings, tools, progress, log)
                self._collect(warnings, detection)

            progress.report("detecting scenes", P_DETECT_SCENES)

            selected = select_timestamps(
                detection.timestamps,
                detection.duration_seconds,
                settings.min_duration_seconds,
                settings.max_slides,
                warnings,
            )
            timeline = self._build_result(
                source,
                settings,
                slides_dir,
                detection.auto_tune,
                ocr_available,
                [SlideImage(index=s.index, timestamp=s.timestamp, image_path="") for s in selected],
                warnings,
            )
            observer.handle(TimelineReady(timeline))
            for placeholder in timeline.slides:
                observer.handle(SlideChunk(slide=placeholder, meta=meta))

            if media.is_stream and needs_ytdlp(source):
                extract_media = acquire("extract")
            else:
                extract_media = media

            def on_frame(completed: int, total: int) -> None:
                ratio = completed / total if total else 0
                progress.report(
                    "extracting frames",
                    P_DETECT_SCENES + ratio * (P_EXTRACT_FRAMES - P_DETECT_SCENES),
                    _count_detail(completed, total),
                )

            on_frame(0, len(selected))
            started_at = time.monotonic()
            extracted = extract_frames(
                tools.ffmpeg,
                extract_media.input_path,
                slides_dir,
                [s.timestamp for s in selected],
                [s.segment for s in selected],
                detection.duration_seconds,
                config.timeout_seconds,
                workers,
                warnings,
                on_progress=on_frame,
                on_status=lambda text: observer.handle(Status(text)),
                on_slide=lambda slide: observer.handle(SlideChunk(slide=slide, meta=meta)),
                log=log,
            )
            elapsed_ms = log.timing(
                f"extract frames (count={len(selected)}, parallel={workers})", started_at
            )
            if selected:
                log(f"extract frames avgMsPerFrame={round(elapsed_ms / len(selected))}")

            filtered = apply_min_duration_filter(
                extracted, settings.min_duration_seconds, warnings
            )
            started_at = time.monotonic()
            slides = rename_slides_with_timestamps(filtered, slides_dir)
            log.timing("rename slides", started_at)
            if not slides:
                raise NoFramesExtractedError(
                    "No slides extracted; try lowering --slides-scene-threshold."
                )

            if ocr_enabled and tools.tesseract:
                slides = self._ocr(slides, tools.tesseract, workers, progress, log)

            progress.report("finalizing", P_FINAL - 1)
            for slide in slides:
                observer.handle(SlideChunk(slide=slide, meta=meta))

            result = self._build_result(
                source,
                settings,
                slides_dir,
                detection.auto_tune,
                ocr_available,
                slides,
                warnings,
            )
            write_slides_manifest(result)
            progress.report("finalizing", P_FINAL)
            log.timing("slides total", total_started_at)
            return result
        finally:
            media.cleanup()
            if extract_media is not None:
                extract_media.cleanup()

    def _detect(
        self,
        media: MediaHandle,
        settings: SlideSettings,
        tools: ResolvedTools,
        progress: MonotonicProgress,
        log: SlidesLog,
    ) -> SceneDetection:
        detect_start = P_FETCH_VIDEO + 2

        def on_segment(completed: int, total: int) -> None:
            ratio = completed / total if total else 0
            progress.report(
                "detecting scenes",
                detect_start + ratio * (P_DETECT_SCENES - detect_start),
                _count_detail(completed, total),
            )

        progress.report("detecting scenes", detect_start)
        started_at = time.monotonic()
        detection = detect_slide_timestamps(
            tools.ffmpeg,
            tools.ffprobe,
            media.input_path,
            settings.scene_threshold,
            settings.auto_tune_threshold,
            self.config.workers,
            self.config.sample_count,
            self.config.timeout_seconds,
            on_progress=on_segment,
            log=log,
        )
        log.timing("ffmpeg scene-detect", started_at)
        return detection

    def _ocr(
        self,
        slides: list[SlideImage],
        tesseract: str,
        workers: int,
        progress: MonotonicProgress,
        log: SlidesLog,
    ) -> list[SlideImage]:
        ocr_start = P_OCR - 3

        def on_ocr(completed: int, total: int) -> None:
            ratio = completed / total if total else 0
            progress.report(
                "running OCR",
                ocr_start + ratio * (P_OCR - ocr_start),
                _count_detail(completed, total),
            )

        log(f"ocr start count={len(slides)} mode=parallel workers={workers}")
        on_ocr(0, len(slides))
        started_at = time.monotonic()
        result = run_ocr_on_slides(slides, tesseract, workers, on_ocr)
        elapsed_ms = log.timing("ocr done", started_at)
        log(f"ocr avgMsPerSlide={round(elapsed_ms / len(slides))}")
        return result

    def _collect(self, warnings: list[str], detection: SceneDetection) -> None:
        for message in detection.warnings:
            self._warn(warnings, message)

    @staticmethod
    def _warn(warnings: list[str], message: str) -> None:
        logger.warning(message)
        warnings.append(message)

    @staticmethod
    def _build_result(
        source: SlideSource,
        settings: SlideSettings,
        slides_dir: Path,
        auto_tune: AutoTune,
        ocr_available: bool,
        slides: list[SlideImage],
        warnings: list[str],
    ) -> SlideExtractionResult:
        return SlideExtractionResult(
            source_url=source.url,
            source_kind=source.kind,
            source_id=source.source_id,
            slides_dir=str(slides_dir),
            scene_threshold=settings.scene_threshold,
            auto_tune_threshold=settings.auto_tune_threshold,
            auto_tune=auto_tune,
            max_slides=settings.max_slides,
            min_slide_duration=settings.min_duration_seconds,
            ocr_requested=settings.ocr,
            ocr_available=ocr_available,
            slides=slides,
            warnings=list(warnings),
        )
