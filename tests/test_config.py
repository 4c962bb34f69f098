import json

from ghostchat import paths
from ghostchat.ghostchat_config import load_config, parse_blocked_words


def test_defaults_without_file_or_env():
    cfg = load_config(env={}, candidates=[])
    assert cfg.backend_url == "http://localhost:3001"
    assert cfg.socket_url == "http://localhost:3001"
    assert cfg.history_timeout == 10.0
    assert cfg.blocked_words == ()
    assert cfg.filter_mode == "replace"


def test_env_overrides_file(tmp_path):
    path = tmp_path / "ghostchat_config.json"
    path.write_text(json.dumps({"backend_url": "http://file.example", "filter_mode": "warn"}))
    cfg = load_config(
        env={"GHOSTCHAT_BACKEND_URL": "https://env.example/chat/",
             "GHOSTCHAT_BLOCKED_WORDS": "Foo, bar ,,foo",
             "GHOSTCHAT_FILTER_MODE": "BLOCK"},
        candidates=[path],
    )
    assert cfg.backend_url == "https://env.example/chat"
    assert cfg.socket_url == "https://env.example/chat"
    assert cfg.blocked_words == ("foo", "bar")
    assert cfg.filter_mode == "block"


def test_invalid_mode_falls_back(capsys):
    cfg = load_config(env={"GHOSTCHAT_FILTER_MODE": "shout"}, candidates=[])
    assert cfg.filter_mode == "replace"
    assert "Config Warning" in capsys.readouterr().err


def test_bad_numbers_warn_and_fall_back(capsys):
    cfg = load_config(env={"GHOSTCHAT_HISTORY_TIMEOUT": "soon",
                           "GHOSTCHAT_DEFAULT_TTL": "-5"}, candidates=[])
    assert cfg.history_timeout == 10.0
    assert cfg.default_ttl == 86400
    err = capsys.readouterr().err
    assert "history_timeout 'soon'" in err
    assert "default_ttl '-5'" in err


def test_numbers_from_env_are_parsed():
    cfg = load_config(env={"GHOSTCHAT_HISTORY_TIMEOUT": "2.5",
                           "GHOSTCHAT_DEFAULT_TTL": "300"}, candidates=[])
    assert cfg.history_timeout == 2.5
    assert cfg.default_ttl == 300


def test_unparseable_file_is_ignored(tmp_path, capsys):
    path = tmp_path / "bad.json"
    path.write_text("{not json")
    cfg = load_config(env={}, candidates=[path])
    assert cfg.backend_url == "http://localhost:3001"
    assert "could not parse" in capsys.readouterr().err


def test_file_read_once_and_shared(monkeypatch):
    monkeypatch.setattr("ghostchat.ghostchat_config.FILE_CONFIG",
                        {"backend_url": "http://shared.example", "log_dir": "/tmp/x"})
    cfg = load_config(env={})
    assert cfg.backend_url == "http://shared.example"


def test_read_config_file_skips_non_objects(tmp_path, capsys):
    listing = tmp_path / "list.json"
    listing.write_text("[1, 2]")
    good = tmp_path / "good.json"
    good.write_text(json.dumps({"filter_mode": "warn"}))
    assert paths.read_config_file([listing, good]) == {"filter_mode": "warn"}
    assert "not a JSON object" in capsys.readouterr().err


def test_explicit_socket_url_wins():
    cfg = load_config(env={"GHOSTCHAT_SOCKET_URL": "http://other:9000"}, candidates=[])
    assert cfg.socket_url == "http://other:9000"


def test_helpers():
    assert parse_blocked_words(["A", " b ", ""]) == ("a", "b")
