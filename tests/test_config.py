from pixsync.config import AppConfig, DatabaseConfig, GitHubConfig, PixivConfig, S3Config


def test_database_url_wins_over_parts():
    assert DatabaseConfig(host="db", url="postgresql://x/y").dsn == "postgresql://x/y"
    assert DatabaseConfig(host="db", port=6543).dsn == "postgresql://pixsync:pixsync@db:6543/pixsync"


def test_s3_public_base():
    assert S3Config(endpoint="http://minio:9000/", bucket="b").public_base == "http://minio:9000/b"
    assert S3Config(public_url="https://img.example.com/").public_base == "https://img.example.com"


def test_from_env(monkeypatch):
    monkeypatch.setenv("PIXIV_PHPSESSID", "123_abc")
    monkeypatch.setenv("GITHUB_TOKEN", "t")
    monkeypatch.setenv("GITHUB_OWNER", "o")
    monkeypatch.setenv("GITHUB_REPO", "r")
    monkeypatch.setenv("GITHUB_ROOT_DIR", "/images/")
    monkeypatch.setenv("BATCH_DELAY", "not-a-number")

    cfg = AppConfig()

    assert cfg.pixiv.authenticated
    assert cfg.github.configured
    assert cfg.github.root_dir == "images"
    assert cfg.batch_delay == 0.5


def test_unconfigured_defaults(monkeypatch):
    for key in ("PIXIV_PHPSESSID", "GITHUB_TOKEN"):
        monkeypatch.delenv(key, raising=False)
    assert not PixivConfig.from_env().authenticated
    assert not GitHubConfig.from_env().configured
