#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "numpy",
#     "sounddevice",
#     "soundfile",
#     "websockets",
#     "httpx",
#     "python-dotenv",
#     "platformdirs",
#     "janus",
#     "rich",
#     "vosk",
# ]
# ///

from __future__ import annotations

import argparse
import asyncio
import json
import locale
import os
import sys
import urllib.parse
from asyncio import CancelledError, Event, create_task
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing, suppress
from datetime import datetime
from enum import Enum
from functools import cached_property
from pathlib import Path
from typing import NamedTuple

import httpx
import janus
import numpy as np
import websockets
from dotenv import load_dotenv
from janus import AsyncQueueShutDown, SyncQueueShutDown
from platformdirs import user_config_dir
from rich.console import Console
from rich.text import Text
from websockets.exceptions import ConnectionClosedError, WebSocketException

VERSION = "1.0"
EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# erase the whole current line, the cursor is then moved back with \r
CLEAR_LINE = "\x1b[2K"


class ConsoleWithLogging:
    """Console wrapper that outputs to both stderr and a log file

    Stdout is reserved to the transcription itself.
    """

    def __init__(self, log_file, default_log_width=5000):
        self.console = Console(stderr=True)
        self.log_console = Console(
            file=log_file,
            force_terminal=False,
            legacy_windows=False,
            width=default_log_width,
        )

    def print_and_log(self, *objects, log_max_width=None, **kwargs):
        """Print to both console and log file

        Args:
            *objects: What to display
            log_max_width: If specified, limits width in log (must be <= default_log_width)
            **kwargs: Other arguments passed to print()
        """
        self.console.print(*objects, **kwargs)
        self.log_console.print(*objects, **kwargs, width=log_max_width)

    def log(self, *objects, **kwargs):
        """Print only to log, not to console"""
        self.log_console.print(*objects, **kwargs)


DEBUG_TO_STDERR = os.getenv("LISTEN_DEBUG", "false").lower() == "true"


def debug(*args) -> None:
    if not DEBUG_TO_STDERR:
        return
    print(f"[{datetime.now()}]", *args, file=sys.stderr)


class ListenError(Exception):
    """Fatal condition: the message is shown to the user and the program exits with a failure status"""


class RecognitionError(Exception):
    """Raised by a recognizer when the recognition task fails"""


class Config:
    class Input:
        class Device(NamedTuple):
            pass

        class File(NamedTuple):
            path: str

    class App(NamedTuple):
        language: str
        input: Config.Input.Device | Config.Input.File
        on_device: bool
        single_line_mode: bool
        add_punctuation: bool
        exit_word: str | None
        provider: BaseRecognizer.Provider
        api_key: str | None = None
        model: DeepgramRecognizer.Model | None = None
        console: ConsoleWithLogging | None = None

    @staticmethod
    def build(
        language: str,
        input: str | None,
        on_device: bool = False,
        single_line_mode: bool = False,
        add_punctuation: bool = False,
        exit_word: str | None = None,
        provider: BaseRecognizer.Provider | None = None,
        api_key: str | None = None,
        model: DeepgramRecognizer.Model | None = None,
        console: ConsoleWithLogging | None = None,
    ) -> Config.App:
        return Config.App(
            language=language,
            input=Config.Input.File(input) if input else Config.Input.Device(),
            on_device=on_device,
            single_line_mode=single_line_mode,
            add_punctuation=add_punctuation,
            exit_word=exit_word or None,
            provider=provider or BaseRecognizer.Provider.DEEPGRAM,
            api_key=api_key,
            model=model or DeepgramRecognizer.Model.NOVA_2,
            console=console,
        )


def system_language() -> str:
    language = None
    with suppress(ValueError):
        language = locale.getlocale()[0]
    if not language or language in {"C", "POSIX"}:
        language = "en_US"
    return language.replace("_", "-")


class CommandLineParser:
    ENV_PREFIX = "LISTEN_"
    VERSION_BANNER = f"listen version {VERSION} (adapted from hear by Sveinbjorn Thordarson)"

    @classmethod
    def get_env(cls, name: str, default: str | None = None, prefix_optional: bool = False):
        result = os.getenv(f"{cls.ENV_PREFIX}{name}", default)
        if prefix_optional and result is None:
            result = os.getenv(name, default)
        return result

    @classmethod
    def get_env_bool(cls, name: str, default: bool = False, prefix_optional: bool = False):
        return cls._env_truthy(cls.get_env(name, str(default), prefix_optional))

    @staticmethod
    def _env_truthy(val: str | None) -> bool:
        if not val:
            return False
        return val.strip().lower() in {"1", "true", "yes", "on"}

    @classmethod
    def _create_arguments(cls, parser: argparse.ArgumentParser, default: dict[str, str | bool | None]):
        prefix = cls.ENV_PREFIX
        parser.add_argument(
            "-s",
            "--supported",
            action="store_true",
            help="Print list of supported languages (locales)",
        )
        parser.add_argument(
            "-v",
            "--version",
            action="store_true",
            help="Print program name and version",
        )
        parser.add_argument(
            "-d",
            "--device",
            dest="on_device",
            action="store_true",
            default=default.get("DEVICE"),
            help=f"Only use on-device speech recognition (env: {prefix}DEVICE)",
        )
        parser.add_argument(
            "-m",
            "--single",
            dest="single_line_mode",
            action="store_true",
            default=default.get("SINGLE"),
            help=f"Single line mode, mic only (env: {prefix}SINGLE)",
        )
        parser.add_argument(
            "-p",
            "--punctuation",
            action="store_true",
            default=default.get("PUNCTUATION"),
            help=f"Add punctuation to speech recognition results (env: {prefix}PUNCTUATION)",
        )
        parser.add_argument(
            "-x",
            "--exit",
            dest="exit_word",
            default=default.get("EXIT_WORD"),
            help=f"Set exit word that causes program to quit (env: {prefix}EXIT_WORD)",
        )
        parser.add_argument(
            "-i",
            "--input",
            help="Specify audio file to process",
        )
        parser.add_argument(
            "-l",
            "--language",
            default=default.get("LANGUAGE"),
            help=f"Specify speech recognition language (locale), default to the system one (env: {prefix}LANGUAGE)",
        )
        parser.add_argument(
            "-P",
            "--provider",
            default=default.get("PROVIDER"),
            choices=[p.value for p in BaseRecognizer.Provider],
            help=f"Speech recognition provider, vosk runs on-device (env: {prefix}PROVIDER)",
        )
        parser.add_argument(
            "-k",
            "--deepgram-api-key",
            default=default.get("DEEPGRAM_API_KEY"),
            help=f"Deepgram API key (env: {prefix}DEEPGRAM_API_KEY or DEEPGRAM_API_KEY)",
        )
        parser.add_argument(
            "--model",
            default=default.get("DEEPGRAM_MODEL"),
            choices=[m.value for m in DeepgramRecognizer.Model],
            help=f"Deepgram model to use for transcription (env: {prefix}DEEPGRAM_MODEL)",
        )
        parser.add_argument(
            "-c",
            "--config",
            default=default.get("CONFIG_PATH"),
            help=f"Path to config file to load instead of the default user config ({default.get('CONFIG_PATH')})",
        )
        parser.add_argument(
            "--log",
            default=default.get("LOG"),
            help=f"Path to log file. Default: ~/.config/listen/listen.log (env: {prefix}LOG)",
        )

    @classmethod
    def parse(cls, argv: list[str] | None = None) -> Config.App | None:
        """Build the configuration from the command line, the environment and the config files.

        Returns None when the command was fully handled here (version, supported languages).
        """
        config_path_mandatory = False
        if config_path_str := cls._extract_config_path_from_argv(argv):
            config_path_mandatory = True
        else:
            config_path_str = (cls.get_env("CONFIG") or "").strip()

        config_dir = Path(user_config_dir("listen", ensure_exists=False))

        config_path = None
        if config_path_str:
            config_path = Path(config_path_str).expanduser()
            # `foo` => `~/.config/listen/foo.env` if `foo` does not exist in the current directory
            if not config_path.is_absolute() and not (Path.cwd() / config_path).exists():
                config_path = config_dir / f"{config_path_str}.env"

        if config_path is None:
            config_path = config_dir / "config.env"
        config_path = config_path.resolve(strict=False)

        if config_path_mandatory and not config_path.is_file():
            raise ListenError(f"Config file {config_path} does not exist or is not a file")

        loaded_config_files = cls._load_env_files(config_path)

        epilog = """Configuration files:
  The script loads configuration from .env files (if they exist):
  1. .env file in the current directory and in the script's directory
  2. ~/.config/listen/config.env (or the file given with -c/--config)

  Command-line arguments have the highest priority, then the system environment,
  then the .env files. Each option can be set via environment variable using
  the LISTEN_ prefix. DEEPGRAM_API_KEY can also be set without the prefix.
  """

        parser = argparse.ArgumentParser(
            prog="listen",
            description="Transcribe speech from the microphone or an audio file",
            epilog=epilog,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        default: dict[str, str | bool | None] = {
            "DEVICE": cls.get_env_bool("DEVICE"),
            "SINGLE": cls.get_env_bool("SINGLE"),
            "PUNCTUATION": cls.get_env_bool("PUNCTUATION"),
            "EXIT_WORD": cls.get_env("EXIT_WORD"),
            "LANGUAGE": cls.get_env("LANGUAGE") or system_language(),
            "PROVIDER": cls.get_env("PROVIDER", BaseRecognizer.Provider.DEEPGRAM.value),
            "DEEPGRAM_API_KEY": cls.get_env("DEEPGRAM_API_KEY", prefix_optional=True),
            "DEEPGRAM_MODEL": cls.get_env("DEEPGRAM_MODEL", DeepgramRecognizer.Model.NOVA_2.value),
            "LOG": cls.get_env("LOG"),
            "CONFIG_PATH": config_path.as_posix(),
        }

        cls._create_arguments(parser, default)
        args = parser.parse_args(argv)

        if args.version:
            print(cls.VERSION_BANNER)
            return None

        try:
            provider = BaseRecognizer.Provider(args.provider)
        except ValueError:
            raise ListenError(f"Unknown speech recognition provider '{args.provider}'") from None
        try:
            model = DeepgramRecognizer.Model(args.model)
        except ValueError:
            raise ListenError(f"Unknown Deepgram model '{args.model}'") from None

        if args.supported:
            print("\n".join(supported_languages(provider)))
            return None

        log_path = cls._log_path(args.log)
        log_file = open(log_path, "a", encoding="utf-8")
        console = ConsoleWithLogging(log_file)

        config = Config.build(
            language=args.language,
            input=args.input,
            on_device=args.on_device,
            single_line_mode=args.single_line_mode,
            add_punctuation=args.punctuation,
            exit_word=args.exit_word,
            provider=provider,
            api_key=args.deepgram_api_key,
            model=model,
            console=console,
        )
        cls._display_config(config, loaded_config_files, log_path)
        return config

    @classmethod
    def _display_config(cls, config: Config.App, loaded_config_files: list[Path], log_path: Path):
        from rich.panel import Panel
        from rich.table import Table

        def format_path(path: Path) -> str:
            try:
                return f"~/{path.relative_to(Path.home())}"
            except ValueError:
                return str(path)

        config_table = Table(show_header=False, box=None, padding=(0, 1))
        config_table.add_column(style="bold cyan", width=20)
        config_table.add_column()

        recognition = f"[green]{config.provider.value}[/green]"
        if config.provider is BaseRecognizer.Provider.DEEPGRAM:
            recognition = f"[yellow]{config.model.value}[/yellow] from {recognition}"
        config_table.add_row("Recognition", recognition)
        config_table.add_row("Language", f"[yellow]{config.language}[/yellow]")
        match config.input:
            case Config.Input.File(path=path):
                config_table.add_row("Input", f"[yellow]{path}[/yellow]")
            case _:
                mode = "single line" if config.single_line_mode else "one line per result"
                config_table.add_row("Input", f"[yellow]Microphone[/yellow] [dim]({mode})[/dim]")
        if config.on_device:
            config_table.add_row("On-device", "[yellow]Required[/yellow]")
        if config.add_punctuation:
            config_table.add_row("Punctuation", "[green]Enabled[/green]")
        if config.exit_word:
            config_table.add_row("Exit word", f"[bold yellow]{config.exit_word}[/bold yellow]")

        config_table.add_row("", "")
        config_table.add_row("[bold]Files", "")
        if loaded_config_files:
            for config_file in loaded_config_files:
                config_table.add_row("  Config", f"[yellow]{format_path(config_file)}[/yellow]")
        else:
            config_table.add_row("  Config", "[dim]None loaded[/dim]")
        config_table.add_row("  Log", f"[yellow]{format_path(log_path)}[/yellow]")

        panel = Panel(config_table, title="[bold]Listen Configuration[/bold]", border_style="blue")
        if DEBUG_TO_STDERR:
            config.console.print_and_log(panel, log_max_width=150)
        else:
            config.console.log(panel, width=150)

    @classmethod
    def _log_path(cls, log: str | None) -> Path:
        if log:
            log_path = Path(log).expanduser()
        else:
            log_path = Path(user_config_dir("listen", ensure_exists=True)) / "listen.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return log_path

    @classmethod
    def _load_env_files(cls, config_path: Path) -> list[Path]:
        """Load environment files and return the list of loaded files, in load order"""
        loaded_files = []

        for directory in {Path.cwd(), Path(__file__).parent}:
            if (env_path := (directory / ".env")).is_file():
                load_dotenv(env_path, override=False)
                loaded_files.append(env_path.resolve())

        if config_path.is_file():
            load_dotenv(dotenv_path=config_path, override=False)
            loaded_files.append(config_path)

        return loaded_files

    @classmethod
    def _extract_config_path_from_argv(cls, argv: list[str] | None) -> str | None:
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("-c", "--config")
        args = parser.parse_known_args(argv)[0]
        return None if args.config is None else args.config.strip()


class RecognitionResult(NamedTuple):
    transcript: str
    is_final: bool


class RecognitionRequest:
    def __init__(self, report_partial_results: bool):
        self.report_partial_results = report_partial_results
        self.requires_on_device_recognition = False
        self.adds_punctuation = False


class AudioBufferRecognitionRequest(RecognitionRequest):
    """Request fed with raw int16 buffers captured from the microphone"""

    def __init__(self):
        super().__init__(report_partial_results=True)
        self.sample_rate: int | None = None
        self.channels = 1
        self._buffers: janus.Queue[bytes] | None = None

    def bind_format(self, sample_rate: int, channels: int = 1):
        # must be called from the event loop, before any buffer is appended
        self.sample_rate = sample_rate
        self.channels = channels
        self._buffers = janus.Queue()

    def append(self, buffer: bytes):
        with suppress(SyncQueueShutDown):
            self._buffers.sync_q.put_nowait(buffer)

    async def buffers(self) -> AsyncIterator[bytes]:
        while True:
            try:
                buffer = await self._buffers.async_q.get()
            except (AsyncQueueShutDown, RuntimeError):
                return
            yield buffer

    async def end_audio(self):
        if self._buffers is None:
            return
        self._buffers.close()
        await self._buffers.wait_closed()


class FileRecognitionRequest(RecognitionRequest):
    def __init__(self, path: Path):
        super().__init__(report_partial_results=False)
        self.path = path


def make_recognition_request(config: Config.App) -> RecognitionRequest:
    request: RecognitionRequest
    match config.input:
        case Config.Input.File(path=path):
            if not Path(path).exists():
                raise ListenError(f"No file at path '{path}'")
            request = FileRecognitionRequest(Path(path))
        case _:
            request = AudioBufferRecognitionRequest()

    request.requires_on_device_recognition = config.on_device
    request.adds_punctuation = config.add_punctuation
    return request


class TranscriptAccumulator:
    """Join the finalized segments of a session with the one still being recognized"""

    def __init__(self):
        self._segments: list[str] = []
        self._pending = ""

    @property
    def transcript(self) -> str:
        return " ".join(part for part in [*self._segments, self._pending] if part)

    def update(self, text: str):
        self._pending = text.strip()

    def finalize(self, text: str):
        text = text.strip()
        if text:
            self._segments.append(text)
        self._pending = ""


class BaseRecognizer:
    UNAVAILABLE_HINT = ""
    supports_on_device_recognition = False

    class Provider(Enum):
        DEEPGRAM = "deepgram"
        VOSK = "vosk"

    class AuthorizationStatus(Enum):
        AUTHORIZED = "authorized"
        DENIED = "denied"
        NOT_DETERMINED = "not_determined"
        RESTRICTED = "restricted"

    def __init__(self, config: Config.App):
        if config.language not in self.supported_locales():
            raise ValueError(f"Unsupported locale: {config.language}")
        self.config = config
        self.language = config.language

    @classmethod
    def supported_locales(cls) -> list[str]:
        raise NotImplementedError

    @classmethod
    async def request_authorization(cls, config: Config.App) -> BaseRecognizer.AuthorizationStatus | int:
        return cls.AuthorizationStatus.AUTHORIZED

    @property
    def is_available(self) -> bool:
        return True

    def recognition_task(self, request: RecognitionRequest, cancel: Event) -> AsyncIterator[RecognitionResult]:
        """Zero or more partial results, then a final one, or a `RecognitionError`"""
        raise NotImplementedError


class DeepgramRecognizer(BaseRecognizer):
    WS_URL = "wss://api.deepgram.com/v1/listen"
    AUTH_URL = "https://api.deepgram.com/v1/projects"
    AUTH_TIMEOUT = 10.0
    FILE_CHUNK_SIZE = 8192
    CLOSE_STREAM = json.dumps({"type": "CloseStream"})
    UNAVAILABLE_HINT = "Set DEEPGRAM_API_KEY or LISTEN_DEEPGRAM_API_KEY, or pass it via --deepgram-api-key."

    LOCALES = (
        "bg", "ca", "cs", "da", "da-DK", "de", "de-CH", "el", "en", "en-AU", "en-GB", "en-IN", "en-NZ", "en-US",
        "es", "es-419", "et", "fi", "fr", "fr-CA", "hi", "hu", "id", "it", "ja", "ko", "ko-KR", "lt", "lv", "ms",
        "nl", "nl-BE", "no", "pl", "pt", "pt-BR", "pt-PT", "ro", "ru", "sk", "sv", "sv-SE", "th", "th-TH", "tr",
        "uk", "vi", "zh", "zh-CN", "zh-HK", "zh-TW",
    )  # fmt: skip

    class Model(Enum):
        NOVA_2 = "nova-2"
        NOVA_2_GENERAL = "nova-2-general"
        NOVA_3 = "nova-3"
        NOVA_3_GENERAL = "nova-3-general"

    class Event(Enum):
        RESULTS = "Results"
        METADATA = "Metadata"

    @classmethod
    def supported_locales(cls) -> list[str]:
        return list(cls.LOCALES)

    @staticmethod
    def _auth_headers(api_key: str | None) -> dict[str, str]:
        return {"Authorization": f"Token {api_key}"}

    @classmethod
    async def request_authorization(
        cls, config: Config.App, transport: httpx.AsyncBaseTransport | None = None
    ) -> BaseRecognizer.AuthorizationStatus | int:
        if not config.api_key:
            return cls.AuthorizationStatus.NOT_DETERMINED
        try:
            async with httpx.AsyncClient(transport=transport, timeout=cls.AUTH_TIMEOUT) as client:
                response = await client.get(cls.AUTH_URL, headers=cls._auth_headers(config.api_key))
        except httpx.HTTPError as exc:
            raise ListenError(f"Speech recognizer not available: {exc}") from exc
        debug("[DEEPGRAM] authorization", response.status_code)
        match response.status_code:
            case 200:
                return cls.AuthorizationStatus.AUTHORIZED
            case 401:
                return cls.AuthorizationStatus.DENIED
            case 403:
                return cls.AuthorizationStatus.RESTRICTED
        return response.status_code

    @property
    def is_available(self) -> bool:
        return bool(self.config.api_key)

    def ws_url(self, request: RecognitionRequest) -> str:
        params = {
            "model": self.config.model.value,
            "language": self.language,
            "punctuate": "true" if request.adds_punctuation else "false",
            "interim_results": "true" if request.report_partial_results else "false",
        }
        if isinstance(request, AudioBufferRecognitionRequest):
            # without these, deepgram expects a containerized stream (like a file)
            params["encoding"] = "linear16"
            params["sample_rate"] = str(request.sample_rate)
            params["channels"] = str(request.channels)
        return self.WS_URL + "?" + urllib.parse.urlencode(params)

    async def recognition_task(self, request: RecognitionRequest, cancel: Event) -> AsyncIterator[RecognitionResult]:
        accumulator = TranscriptAccumulator()
        try:
            async with websockets.connect(
                self.ws_url(request),
                additional_headers=self._auth_headers(self.config.api_key),
                max_size=None,
            ) as ws:
                sender = create_task(self._sender(ws, request, cancel))
                try:
                    async for raw in ws:
                        if (result := self.on_data(raw, accumulator)) is not None:
                            yield result
                finally:
                    sender.cancel()
                    # a broken connection is reported by the receiving side
                    with suppress(CancelledError, WebSocketException):
                        await sender
        except ConnectionClosedError as exc:
            raise RecognitionError(f"Speech recognition failed: {exc}") from exc
        except (OSError, WebSocketException) as exc:
            raise RecognitionError(f"Unable to reach speech recognizer: {exc}") from exc

        yield RecognitionResult(accumulator.transcript, is_final=True)

    async def _sender(self, ws, request: RecognitionRequest, cancel: Event):
        if isinstance(request, FileRecognitionRequest):
            with request.path.open("rb") as audio_file:
                while (chunk := audio_file.read(self.FILE_CHUNK_SIZE)) and not cancel.is_set():
                    await ws.send(chunk)
        elif isinstance(request, AudioBufferRecognitionRequest):
            async for buffer in request.buffers():
                if cancel.is_set():
                    break
                await ws.send(buffer)
        # ask the server to flush its last results and close the connection
        await ws.send(self.CLOSE_STREAM)

    def on_data(self, raw: str | bytes, accumulator: TranscriptAccumulator) -> RecognitionResult | None:
        if isinstance(raw, bytes):
            return None
        try:
            event = json.loads(raw)
        except ValueError as exc:
            raise RecognitionError(f"Invalid message from speech recognizer: {exc}") from exc

        try:
            event_type = self.Event(event.get("type", ""))
        except ValueError:
            return None

        match event_type:
            case self.Event.METADATA:
                debug("[DEEPGRAM] metadata", event.get("request_id"))

            case self.Event.RESULTS:
                alternatives = event.get("channel", {}).get("alternatives") or [{}]
                transcript = alternatives[0].get("transcript", "")
                if event.get("is_final"):
                    accumulator.finalize(transcript)
                else:
                    accumulator.update(transcript)
                if accumulator.transcript:
                    return RecognitionResult(accumulator.transcript, is_final=False)

        return None


class VoskRecognizer(BaseRecognizer):
    BLOCK_SIZE = 3200
    UNAVAILABLE_HINT = "Check that a Vosk model for this locale is installed or can be downloaded."
    supports_on_device_recognition = True

    # locale identifier => vosk model language
    LANGUAGES = {
        "ar-SA": "ar",
        "br-FR": "br",
        "ca-ES": "ca",
        "cs-CZ": "cs",
        "de-DE": "de",
        "el-GR": "el-gr",
        "en-IN": "en-in",
        "en-US": "en-us",
        "eo": "eo",
        "es-ES": "es",
        "fa-IR": "fa",
        "fr-FR": "fr",
        "gu-IN": "gu",
        "hi-IN": "hi",
        "it-IT": "it",
        "ja-JP": "ja",
        "kk-KZ": "kz",
        "ko-KR": "ko",
        "nl-NL": "nl",
        "pl-PL": "pl",
        "pt-BR": "pt",
        "pt-PT": "pt",
        "ru-RU": "ru",
        "sv-SE": "sv",
        "te-IN": "te",
        "tg-TJ": "tg",
        "tl-PH": "tl-ph",
        "tr-TR": "tr",
        "uk-UA": "uk",
        "uz-UZ": "uz",
        "vi-VN": "vn",
        "zh-CN": "cn",
    }

    @classmethod
    def supported_locales(cls) -> list[str]:
        return list(cls.LANGUAGES)

    @cached_property
    def _model(self):
        import vosk

        vosk.SetLogLevel(-1)
        try:
            return vosk.Model(lang=self.LANGUAGES[self.language])
        except Exception as exc:
            debug("[VOSK] unable to load model", exc)
            return None

    @property
    def is_available(self) -> bool:
        return self._model is not None

    async def recognition_task(self, request: RecognitionRequest, cancel: Event) -> AsyncIterator[RecognitionResult]:
        if request.adds_punctuation:
            debug("[VOSK] punctuation is not supported by vosk models, ignored")

        accumulator = TranscriptAccumulator()

        if isinstance(request, FileRecognitionRequest):
            import soundfile as sf

            try:
                info = sf.info(str(request.path))
                blocks = sf.blocks(str(request.path), blocksize=self.BLOCK_SIZE, dtype="int16", always_2d=True)
                kaldi = self._recognizer(info.samplerate)
                for block in blocks:
                    if cancel.is_set():
                        return
                    if (result := await self._accept(kaldi, self.to_mono(block), accumulator)) is not None:
                        yield result
            except RuntimeError as exc:
                # soundfile reports unreadable or undecodable files this way
                raise RecognitionError(f"Unable to read audio file: {exc}") from exc
            accumulator.finalize(json.loads(kaldi.FinalResult()).get("text", ""))
            yield RecognitionResult(accumulator.transcript, is_final=True)
            return

        kaldi = self._recognizer(request.sample_rate)
        async for buffer in request.buffers():
            if cancel.is_set():
                return
            if (result := await self._accept(kaldi, buffer, accumulator)) is not None:
                yield result

    @staticmethod
    def to_mono(block: np.ndarray) -> bytes:
        if block.shape[1] == 1:
            return block.tobytes()
        return block.mean(axis=1).astype(np.int16).tobytes()

    def _recognizer(self, sample_rate: int):
        import vosk

        try:
            return vosk.KaldiRecognizer(self._model, sample_rate)
        except Exception as exc:
            raise RecognitionError(f"Unable to start speech recognition: {exc}") from exc

    @staticmethod
    async def _accept(kaldi, data: bytes, accumulator: TranscriptAccumulator) -> RecognitionResult | None:
        previous = accumulator.transcript
        try:
            accepted = await asyncio.to_thread(kaldi.AcceptWaveform, data)
        except Exception as exc:
            raise RecognitionError(f"Speech recognition failed: {exc}") from exc
        if accepted:
            accumulator.finalize(json.loads(kaldi.Result()).get("text", ""))
        else:
            accumulator.update(json.loads(kaldi.PartialResult()).get("partial", ""))
        if not accumulator.transcript or accumulator.transcript == previous:
            return None
        return RecognitionResult(accumulator.transcript, is_final=False)


RECOGNIZERS: dict[BaseRecognizer.Provider, type[BaseRecognizer]] = {
    BaseRecognizer.Provider.DEEPGRAM: DeepgramRecognizer,
    BaseRecognizer.Provider.VOSK: VoskRecognizer,
}


def supported_languages(provider: BaseRecognizer.Provider) -> list[str]:
    return sorted(RECOGNIZERS[provider].supported_locales())


def check_language_supported(recognizer_cls: type[BaseRecognizer], language: str):
    if language not in recognizer_cls.supported_locales():
        raise ListenError(f"Locale '{language}' not supported. Run with -s flag to see list of supported locales")


async def request_speech_authorization(recognizer_cls: type[BaseRecognizer], config: Config.App):
    status = await recognizer_cls.request_authorization(config)
    match status:
        case BaseRecognizer.AuthorizationStatus.AUTHORIZED:
            return
        case BaseRecognizer.AuthorizationStatus.DENIED:
            raise ListenError("Speech recognition authorization denied")
        case BaseRecognizer.AuthorizationStatus.NOT_DETERMINED:
            raise ListenError("Speech recognition authorization not determined")
        case BaseRecognizer.AuthorizationStatus.RESTRICTED:
            raise ListenError("Speech recognition authorization restricted on this device")
        case _:
            raise ListenError(f"Unexpected authorization status ({status})")


def make_recognizer(
    recognizer_cls: type[BaseRecognizer], config: Config.App, request: RecognitionRequest
) -> BaseRecognizer:
    try:
        recognizer = recognizer_cls(config)
    except ValueError as exc:
        raise ListenError("Unable to initialize speech recognizer") from exc

    if not recognizer.is_available:
        raise ListenError(f"Speech recognizer not available. {recognizer.UNAVAILABLE_HINT}".strip())

    if request.requires_on_device_recognition and not recognizer.supports_on_device_recognition:
        raise ListenError(f"On-device recognition is not supported for locale '{config.language}'")

    return recognizer


class AudioEngine:
    BUFFER_SIZE = 3200

    def __init__(self):
        self._stream = None
        self._request: AudioBufferRecognitionRequest | None = None

    def install_tap(self, request: AudioBufferRecognitionRequest):
        import sounddevice as sd

        try:
            device = sd.query_devices(kind="input")
            sample_rate = int(device["default_samplerate"])
            request.bind_format(sample_rate, channels=1)
            self._request = request
            self._stream = sd.RawInputStream(
                samplerate=sample_rate,
                blocksize=self.BUFFER_SIZE,
                dtype="int16",
                channels=1,
                callback=self._callback,
            )
        except (sd.PortAudioError, ValueError) as exc:
            raise ListenError(f"Failed to start audio capture: {exc}") from exc
        debug("[AUDIO] tap installed on", device["name"], "at", sample_rate, "Hz")

    def start(self):
        import sounddevice as sd

        try:
            self._stream.start()
        except sd.PortAudioError as exc:
            raise ListenError(f"Failed to start audio capture: {exc}") from exc

    def stop(self):
        if self._stream is None:
            return
        with suppress(Exception):
            self._stream.stop()
            self._stream.close()

    def _callback(self, indata, frames, time_info, status):  # pragma: no cover - sounddevice callback
        if status:
            debug("[AUDIO]", status)
        self._request.append(bytes(indata))


class RecognitionSession:
    """Own everything a recognition needs for the lifetime of the process.

    The recognizer results are consumed by a task that passes them to the output handler,
    while `keep_alive` parks the caller until the handler (or an error) ends the session.
    """

    KEEP_ALIVE_INTERVAL = 10.0

    def __init__(
        self,
        recognizer: BaseRecognizer,
        request: RecognitionRequest,
        output_handler: OutputHandler,
        console: ConsoleWithLogging | None = None,
    ):
        self.recognizer = recognizer
        self.request = request
        self.output_handler = output_handler
        self.console = console
        self.audio_engine: AudioEngine | None = None
        self.task: asyncio.Task | None = None
        self._stopped = Event()
        self._error: ListenError | None = None

    async def start(self):
        if isinstance(self.request, AudioBufferRecognitionRequest):
            self.audio_engine = AudioEngine()
            self.audio_engine.install_tap(self.request)

        self._log(f"Session started ({self.recognizer.config.provider.value}, {self.recognizer.language})")
        self.task = create_task(self._run())

        if self.audio_engine is not None:
            try:
                self.audio_engine.start()
            except ListenError:
                self._stopped.set()
                self.task.cancel()
                raise

    async def _run(self):
        try:
            async with aclosing(self.recognizer.recognition_task(self.request, self._stopped)) as results:
                async for result in results:
                    if not result.is_final and not self.request.report_partial_results:
                        continue
                    debug("[RESULT]", result)
                    if result.is_final:
                        self._log(f"Final transcript: {result.transcript}")
                    if not self.output_handler(result.transcript, result.is_final):
                        break
                else:
                    if not self._stopped.is_set():
                        self._log("Recognition ended without a final result")
                        self._error = ListenError("Recognition ended without a final result")
        except RecognitionError as exc:
            self._log(f"Recognition error: {exc}")
            self._error = ListenError(str(exc))
        finally:
            self._stopped.set()

    async def keep_alive(self) -> int:
        while not self._stopped.is_set():
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stopped.wait(), timeout=self.KEEP_ALIVE_INTERVAL)
        try:
            await self.task
        finally:
            await self.close()
        if self._error is not None:
            raise self._error
        return EXIT_SUCCESS

    async def close(self):
        if self.audio_engine is not None:
            self.audio_engine.stop()
        if isinstance(self.request, AudioBufferRecognitionRequest):
            await self.request.end_audio()

    def _log(self, message: str):
        if self.console is not None:
            self.console.log(Text(f"[{datetime.now()}] {message}"))


OutputHandler = Callable[[str, bool], bool]


def make_output_handler(config: Config.App, stream=None) -> OutputHandler:
    """Return a handler printing each result, that returns False when the program must end"""
    match config.input:
        case Config.Input.File():
            return file_input_output_handler(stream)
    return device_output_handler(config, stream)


def device_output_handler(config: Config.App, stream=None) -> OutputHandler:
    exit_word = config.exit_word.lower() if config.exit_word else None

    def handle(transcript: str, is_final: bool) -> bool:
        out = stream or sys.stdout
        if config.single_line_mode:
            out.write(f"{CLEAR_LINE}\r{transcript}")
            out.flush()
        else:
            print(transcript, file=out, flush=True)

        if exit_word is not None:
            lowercased = transcript.lower()
            if lowercased.endswith(f" {exit_word}") or lowercased == exit_word:
                return False

        return not is_final

    return handle


def file_input_output_handler(stream=None) -> OutputHandler:
    def handle(transcript: str, is_final: bool) -> bool:
        out = stream or sys.stdout
        suffix = " " if not transcript.endswith(" ") and not is_final else ""
        out.write(transcript + suffix)
        out.flush()

        if is_final:
            out.write("\n")
            out.flush()
            return False
        return True

    return handle


async def transcribe(config: Config.App) -> int:
    recognizer_cls = RECOGNIZERS[config.provider]
    check_language_supported(recognizer_cls, config.language)
    await request_speech_authorization(recognizer_cls, config)

    request = make_recognition_request(config)
    recognizer = make_recognizer(recognizer_cls, config, request)

    session = RecognitionSession(recognizer, request, make_output_handler(config), console=config.console)
    await session.start()
    return await session.keep_alive()


async def main_async(argv: list[str] | None = None) -> int:
    config = None
    try:
        config = CommandLineParser.parse(argv)
        if config is None:
            return EXIT_SUCCESS
        return await transcribe(config)
    except ListenError as exc:
        print(exc)
        if config is not None and config.console is not None:
            config.console.log(Text(f"[{datetime.now()}] ERROR: {exc}"))
        return EXIT_FAILURE


def main():
    try:
        sys.exit(asyncio.run(main_async()))
    except KeyboardInterrupt:
        print("\nExit.")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
