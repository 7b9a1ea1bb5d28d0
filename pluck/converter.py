"""Converts downloaded media with ffmpeg using table-driven codec settings."""
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Awaitable, Callable, List, Mapping, Optional

from .config import AudioBitDepth, AudioFormat, DownloadMode, JobSettings, VideoCodec
from .constants import PRORES_PIXEL_FORMAT
from .exceptions import ProbeError, ProcessLaunchError
from .process_runner import ProcessRunner
from .prober import MediaProber
from .progress import END_MARKER, ProgressThrottle, parse_conversion_progress

ProgressCallback = Callable[[Optional[float], str], Awaitable[None]]

PCM_CODECS: Mapping[AudioBitDepth, str] = MappingProxyType({
    AudioBitDepth.BIT_16: 'pcm_s16le',
    AudioBitDepth.BIT_24: 'pcm_s24le',
    AudioBitDepth.BIT_32: 'pcm_s32le',
})

# FLAC has no 24-bit sample format in ffmpeg; s32 carries 24-bit audio.
FLAC_SAMPLE_FORMATS: Mapping[AudioBitDepth, str] = MappingProxyType({
    AudioBitDepth.BIT_16: 's16',
    AudioBitDepth.BIT_24: 's32',
    AudioBitDepth.BIT_32: 's32',
})

PRORES_PROFILES: Mapping[VideoCodec, str] = MappingProxyType({
    VideoCodec.PRORES_PROXY: '0',
    VideoCodec.PRORES_LT: '1',
    VideoCodec.PRORES_HQ: '3',
})


@dataclass(frozen=True)
class AudioProfile:
    """
    ffmpeg audio arguments for one output container.

    Exactly one of `codec` / `codec_by_depth` is set. `fixed_sample_rate`
    overrides the user's sample rate for containers that require one.
    """
    codec: Optional[str] = None
    codec_by_depth: Optional[Mapping[AudioBitDepth, str]] = None
    bitrate: Optional[str] = None
    quality: Optional[str] = None
    sample_format_by_depth: Optional[Mapping[AudioBitDepth, str]] = None
    fixed_sample_rate: Optional[int] = None

    def arguments(self, sample_rate: int, bit_depth: AudioBitDepth) -> List[str]:
        codec = self.codec_by_depth[bit_depth] if self.codec_by_depth else self.codec
        args = ['-c:a', codec]
        if self.bitrate:
            args.extend(['-b:a', self.bitrate])
        if self.quality:
            args.extend(['-q:a', self.quality])
        args.extend(['-ar', str(self.fixed_sample_rate or sample_rate)])
        if self.sample_format_by_depth:
            args.extend(['-sample_fmt', self.sample_format_by_depth[bit_depth]])
        return args


AUDIO_PROFILES: Mapping[AudioFormat, AudioProfile] = MappingProxyType({
    AudioFormat.WAV: AudioProfile(codec_by_depth=PCM_CODECS),
    AudioFormat.FLAC: AudioProfile(codec='flac', sample_format_by_depth=FLAC_SAMPLE_FORMATS),
    AudioFormat.MP3: AudioProfile(codec='libmp3lame', bitrate='320k'),
    AudioFormat.M4A: AudioProfile(codec='aac', bitrate='256k'),
    AudioFormat.OPUS: AudioProfile(codec='libopus', bitrate='192k', fixed_sample_rate=48000),
    AudioFormat.OGG: AudioProfile(codec='libvorbis', quality='8'),
})


def audio_only_arguments(settings: JobSettings) -> List[str]:
    profile = AUDIO_PROFILES[settings.audio_format]
    return ['-vn', *profile.arguments(settings.audio_sample_rate.value, settings.audio_bit_depth)]


def video_arguments(settings: JobSettings) -> List[str]:
    return [
        '-c:v', 'prores_ks',
        '-profile:v', PRORES_PROFILES[settings.video_codec],
        '-pix_fmt', PRORES_PIXEL_FORMAT,
        '-c:a', PCM_CODECS[settings.audio_bit_depth],
        '-ar', str(settings.audio_sample_rate.value),
    ]


MODE_ARGUMENT_BUILDERS: Mapping[DownloadMode, Callable[[JobSettings], List[str]]] = MappingProxyType({
    DownloadMode.AUDIO_ONLY: audio_only_arguments,
    DownloadMode.BOTH: video_arguments,
})


def conversion_output_path(input_path: Path, output_dir: Path, settings: JobSettings) -> Path:
    """Same base name as the input, extension chosen by the target container."""
    return output_dir / f"{input_path.stem}.{settings.output_extension}"


def build_ffmpeg_arguments(input_path: Path, output_path: Path, settings: JobSettings) -> List[str]:
    return [
        '-y', '-i', str(input_path),
        *MODE_ARGUMENT_BUILDERS[settings.download_mode](settings),
        '-map', '0',
        '-progress', 'pipe:1',
        str(output_path),
    ]


class Converter:
    """Transcodes one file with ffmpeg, reporting throttled progress."""

    def __init__(self, runner: ProcessRunner, ffmpeg_path: Path, prober: MediaProber):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path
        self.prober = prober
        self.logger = logging.getLogger(__name__)

    async def convert(self, input_path: Path, output_dir: Path, settings: JobSettings,
                      progress: ProgressCallback) -> Path:
        """
        Converts `input_path` into `output_dir` and returns the output path.

        When the target would overwrite the input, ffmpeg writes a temporary
        sibling that then replaces the input. A failed or cancelled run removes
        whatever ffmpeg had written.

        Raises:
            ProcessLaunchError, ProcessError: Propagated from the runner.
        """
        output_path = conversion_output_path(input_path, output_dir, settings)
        in_place = output_path.resolve() == input_path.resolve()
        target_path = output_path.with_name(f"{output_path.stem}.converting{output_path.suffix}") if in_place else output_path

        try:
            duration = await self.prober.probe_duration(input_path)
        except ProbeError as e:
            self.logger.warning(f"Could not probe duration of {input_path.name}: {e}. Progress will not advance.")
            duration = 0.0

        throttle = ProgressThrottle()

        async def handle_line(line: str, stream: str):
            if stream != 'stdout':
                self.logger.debug(f"[ffmpeg] {line}")
                return
            update = parse_conversion_progress(line, duration)
            if update is None:
                return
            if throttle.should_emit(force=line.strip() == END_MARKER):
                await progress(update.fraction, update.message)

        try:
            await self.runner.run(self.ffmpeg_path, build_ffmpeg_arguments(input_path, target_path, settings),
                                  on_line=handle_line)
        except ProcessLaunchError:
            raise
        except BaseException:
            # Failed or cancelled ffmpeg runs leave a truncated target behind.
            self._discard_partial(target_path)
            raise

        if in_place:
            os.replace(target_path, output_path)

        throttle.should_emit(force=True)
        await progress(1.0, "Conversion complete")
        return output_path

    def _discard_partial(self, target_path: Path):
        try:
            target_path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.error(f"Error deleting partial file {target_path.name}: {e}")
