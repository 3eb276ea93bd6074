"""Tests for the command line parsing and the program entry points."""

import asyncio

import pytest

import listen
from listen import CommandLineParser, Config


def parse(*args):
    return CommandLineParser.parse(list(args))


@pytest.fixture
def log_file(tmp_path):
    return str(tmp_path / "logs" / "listen.log")


def test_version(capsys):
    assert parse("-v", "-s") is None
    assert capsys.readouterr().out == "listen version 1.0 (adapted from hear by Sveinbjorn Thordarson)\n"


def test_supported_languages(capsys):
    assert parse("--supported") is None
    out = capsys.readouterr().out
    assert out == "\n".join(sorted(listen.DeepgramRecognizer.LOCALES)) + "\n"


def test_supported_languages_of_vosk(capsys):
    assert parse("-s", "-P", "vosk") is None
    assert capsys.readouterr().out.splitlines() == sorted(listen.VoskRecognizer.LANGUAGES)


def test_flags(log_file):
    config = parse("-d", "-m", "-p", "-x", "stop", "-l", "fr-FR", "-k", "secret", "--model", "nova-3", "--log", log_file)

    assert config.language == "fr-FR"
    assert config.input == Config.Input.Device()
    assert config.on_device is True
    assert config.single_line_mode is True
    assert config.add_punctuation is True
    assert config.exit_word == "stop"
    assert config.api_key == "secret"
    assert config.model is listen.DeepgramRecognizer.Model.NOVA_3
    assert config.provider is listen.BaseRecognizer.Provider.DEEPGRAM
    assert isinstance(config.console, listen.ConsoleWithLogging)


def test_defaults(monkeypatch, log_file):
    monkeypatch.setattr(listen, "system_language", lambda: "de-DE")
    config = parse("-i", "talk.wav", "--log", log_file)

    assert config.language == "de-DE"
    assert config.input == Config.Input.File("talk.wav")
    assert config.on_device is False
    assert config.single_line_mode is False
    assert config.add_punctuation is False
    assert config.exit_word is None
    assert config.api_key is None


def test_configuration_is_logged(log_file):
    parse("-x", "stop", "--log", log_file)
    with open(log_file, encoding="utf-8") as f:
        content = f.read()
    assert "Listen Configuration" in content
    assert "stop" in content


def test_env_defaults(monkeypatch, log_file):
    monkeypatch.setenv("LISTEN_LANGUAGE", "en-GB")
    monkeypatch.setenv("LISTEN_PROVIDER", "vosk")
    monkeypatch.setenv("LISTEN_EXIT_WORD", "quit")
    monkeypatch.setenv("DEEPGRAM_API_KEY", "from-env")

    config = parse("--log", log_file)

    assert config.language == "en-GB"
    assert config.provider is listen.BaseRecognizer.Provider.VOSK
    assert config.exit_word == "quit"
    assert config.api_key == "from-env"


def test_boolean_env_defaults(monkeypatch, log_file):
    monkeypatch.setenv("LISTEN_DEVICE", "yes")
    monkeypatch.setenv("LISTEN_SINGLE", " 1 ")
    monkeypatch.setenv("LISTEN_PUNCTUATION", "off")

    config = parse("--log", log_file)

    assert config.on_device is True
    assert config.single_line_mode is True
    assert config.add_punctuation is False
    assert parse("-p", "--log", log_file).add_punctuation is True


@pytest.mark.parametrize(
    ("value", "expected"),
    [("1", True), ("true", True), ("On", True), ("YES", True), ("0", False), ("no", False), ("", False), (None, False)],
)
def test_env_truthy(value, expected):
    assert CommandLineParser._env_truthy(value) is expected


def test_cli_overrides_env(monkeypatch, log_file):
    monkeypatch.setenv("LISTEN_LANGUAGE", "en-GB")
    assert parse("-l", "en-US", "--log", log_file).language == "en-US"


def test_config_file(isolated_env, log_file):
    config_file = isolated_env / "work.env"
    config_file.write_text("LISTEN_LANGUAGE=it\nLISTEN_DEEPGRAM_API_KEY=from-file\n", encoding="utf-8")

    config = parse("-c", str(config_file), "--log", log_file)

    assert config.language == "it"
    assert config.api_key == "from-file"


def test_user_config_file(isolated_env, log_file):
    config_dir = isolated_env / "config" / "listen"
    config_dir.mkdir(parents=True)
    (config_dir / "french.env").write_text("LISTEN_LANGUAGE=fr\n", encoding="utf-8")

    assert parse("-c", "french", "--log", log_file).language == "fr"


def test_missing_config_file(isolated_env):
    with pytest.raises(listen.ListenError, match="does not exist"):
        parse("-c", str(isolated_env / "missing.env"))


def test_invalid_provider_from_env(monkeypatch):
    monkeypatch.setenv("LISTEN_PROVIDER", "siri")
    with pytest.raises(listen.ListenError, match="Unknown speech recognition provider 'siri'"):
        parse("-s")


def test_main_async_reports_fatal_errors(log_file, capsys):
    assert asyncio.run(listen.main_async(["-l", "xx-XX", "--log", log_file])) == listen.EXIT_FAILURE
    assert capsys.readouterr().out == "Locale 'xx-XX' not supported. Run with -s flag to see list of supported locales\n"
    with open(log_file, encoding="utf-8") as f:
        assert "ERROR: Locale 'xx-XX' not supported" in f.read()


def test_main_async_informational_flags(capsys):
    assert asyncio.run(listen.main_async(["-v"])) == listen.EXIT_SUCCESS


def test_main_exit_code(monkeypatch, fake_recognizer, tmp_path, log_file, capsys):
    audio = tmp_path / "talk.wav"
    audio.write_bytes(b"RIFF")
    fake_recognizer.results = [listen.RecognitionResult("bonjour", True)]
    monkeypatch.setattr(listen.sys, "argv", ["listen", "-l", "fr-FR", "-i", str(audio), "--log", log_file])

    with pytest.raises(SystemExit) as exc_info:
        listen.main()

    assert exc_info.value.code == listen.EXIT_SUCCESS
    assert capsys.readouterr().out == "bonjour\n"
