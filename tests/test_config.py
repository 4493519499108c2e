from restreamer.config import MediaServerConfig, load_config


def test_load_config_reads_environment(monkeypatch):
    monkeypatch.setenv("MEDIA_SERVER_HOST", "nimble.internal")
    monkeypatch.setenv("MEDIA_SERVER_RTMP_PORT", "1936")
    monkeypatch.setenv("MEDIA_SERVER_API_PORT", "8081")
    monkeypatch.setenv("MONITOR_ENABLED", "no")
    monkeypatch.setenv("MONITOR_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/test.db")
    monkeypatch.setenv("SOCIAL_WEBHOOK_URL", "https://social.test/posts")

    config = load_config()

    assert config.media_server.host == "nimble.internal"
    assert config.media_server.rtmp_port == 1936
    assert config.media_server.api_url == "http://nimble.internal:8081"
    assert config.media_server.stats_url == "http://nimble.internal:8082"
    assert config.monitor.enabled is False
    assert config.monitor.interval_seconds == 15
    assert config.database.url == "sqlite:///tmp/test.db"
    assert config.social_webhook_url == "https://social.test/posts"


def test_ingest_url():
    assert MediaServerConfig(host="media.test").ingest_url("studio") == "rtmp://media.test:1935/studio"
