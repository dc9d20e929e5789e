"""Tests for the bucketsync command line."""

import logging
import urllib.parse

import pytest
import yaml
from conftest import EXAMPLE_ACCESS_ID, EXAMPLE_SECRET, FakeRemote, write_file

from bucketsync import cli
from bucketsync.reconcile import compute_file_md5


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "bucketsync.yaml"
    path.write_text(
        yaml.dump(
            {
                "endpoint": {"url": "https://s3.example.com", "bucket": "photos"},
                "auth": {"access_key": EXAMPLE_ACCESS_ID, "secret_key": EXAMPLE_SECRET},
                "executor": {"progress_interval": 0.01},
                "observability": {"metrics": False},
            }
        )
    )
    return path


def run_main(argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


class FakeTransport(FakeRemote):
    """Stands in for HttpTransport; shares one FakeRemote's objects."""

    objects_by_key: dict = {}

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(self.objects_by_key)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None


class TestParseArgs:
    """Tests for parse_args()."""

    def test_diff_arguments(self):
        args = cli.parse_args(["diff", "/tmp/x", "--prefix", "backup/", "--workers", "8"])
        assert args.command == "diff"
        assert str(args.local_dir) == "/tmp/x"
        assert args.prefix == "backup/"
        assert args.workers == 8

    def test_presign_defaults(self):
        args = cli.parse_args(["presign", "get", "a.txt"])
        assert args.expires_in == 3600
        assert args.header == []

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])


class TestPresign:
    """bucketsync presign ..."""

    def test_get_url(self, config_path, capsys):
        code = run_main(["--config", str(config_path), "presign", "get", "dir/a b.txt"])

        assert code == 0
        url = capsys.readouterr().out.strip()
        parts = urllib.parse.urlsplit(url)
        assert parts.netloc == "s3.example.com"
        assert parts.path == "/photos/dir/a%20b.txt"
        params = urllib.parse.parse_qs(parts.query)
        assert params["AWSAccessKeyId"] == [EXAMPLE_ACCESS_ID]
        assert set(params) == {"AWSAccessKeyId", "Expires", "Signature"}

    def test_put_prints_bound_headers(self, config_path, capsys):
        code = run_main(
            [
                "--config",
                str(config_path),
                "presign",
                "put",
                "a.csv",
                "--content-type",
                "text/csv",
                "--header",
                "owner=ops",
            ]
        )

        assert code == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("https://s3.example.com/photos/a.csv?")
        assert lines[1:] == ["Content-Type: text/csv", "x-amz-meta-owner: ops"]

    def test_malformed_header(self, config_path):
        argv = ["--config", str(config_path), "presign", "put", "a", "--header", "oops"]
        assert run_main(argv) == 1

    def test_missing_config(self, tmp_path):
        assert run_main(["--config", str(tmp_path / "nope.yaml"), "presign", "get", "a"]) == 1

    def test_colliding_headers_exit_code(self, config_path):
        argv = ["--config", str(config_path), "presign", "put", "a"]
        argv += ["--header", "foo=1", "--header", "x-amz-meta-foo=2"]
        assert run_main(argv) == 1

    def test_out_of_range_config_exit_code(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.dump({"executor": {"max_workers": 0}}))
        assert run_main(["--config", str(path), "presign", "get", "a"]) == 1


class TestMetricsFile:
    """--metrics-file writes the Prometheus text exposition after the command."""

    def test_written_after_presign(self, config_path, tmp_path):
        metrics_path = tmp_path / "bucketsync.prom"
        argv = ["--config", str(config_path), "--metrics-file", str(metrics_path)]

        code = run_main(argv + ["presign", "get", "a.txt"])

        assert code == 0
        text = metrics_path.read_text()
        assert 'bucketsync_urls_signed_total{verb="GET"}' in text

    def test_written_when_command_fails(self, config_path, tmp_path):
        metrics_path = tmp_path / "bucketsync.prom"
        argv = ["--config", str(config_path), "--metrics-file", str(metrics_path)]

        code = run_main(argv + ["presign", "put", "a", "--header", "oops"])

        assert code == 1
        assert "bucketsync_batch_operations_total" in metrics_path.read_text()

    def test_not_written_by_default(self, config_path, tmp_path):
        assert run_main(["--config", str(config_path), "presign", "get", "a.txt"]) == 0
        assert not list(tmp_path.glob("*.prom"))



class TestDiff:
    """bucketsync diff ... against a stand-in transport."""

    @pytest.fixture(autouse=True)
    def fake_transport(self, monkeypatch):
        FakeTransport.objects_by_key = {}
        monkeypatch.setattr(cli, "HttpTransport", FakeTransport)

    def test_in_sync(self, config_path, tmp_path, capsys):
        root = tmp_path / "local"
        path = write_file(root, "a.txt", b"hello")
        remote = FakeRemote()
        remote.add("backup/a.txt", content_hash=compute_file_md5(path))
        FakeTransport.objects_by_key = remote.objects

        code = run_main(["--config", str(config_path), "diff", str(root), "--prefix", "backup"])

        assert code == 0
        out = capsys.readouterr().out
        assert "synchronized (1):\n  a.txt" in out
        assert "only_on_client (0):" in out

    def test_differences_exit_code(self, config_path, tmp_path, capsys):
        root = tmp_path / "local"
        write_file(root, "mine.txt", b"local")
        remote = FakeRemote()
        remote.add("theirs.txt", etag="abc")
        FakeTransport.objects_by_key = remote.objects

        code = run_main(["--config", str(config_path), "diff", str(root)])

        assert code == 2
        out = capsys.readouterr().out
        assert "only_on_server (1):\n  theirs.txt" in out
        assert "only_on_client (1):\n  mine.txt" in out

    def test_unreadable_root(self, config_path, tmp_path):
        assert run_main(["--config", str(config_path), "diff", str(tmp_path / "nope")]) == 1

    def test_zero_workers_rejected(self, config_path, tmp_path):
        root = tmp_path / "local"
        write_file(root, "a.txt", b"hello")
        argv = ["--config", str(config_path), "diff", str(root), "--workers", "0"]
        assert run_main(argv) == 1
