from http.client import IncompleteRead
from urllib.error import URLError

import pytest

from audio.hls import (
    HlsEngine,
    HlsError,
    OTHER_ERROR,
    HlsMediaSource,
    ManifestWorker,
    is_hls_url,
    parse_attribute_list,
    parse_master_playlist,
    parse_media_playlist,
    select_variant,
)

MASTER = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360,CODECS="avc1.4d401e,mp4a.40.2"
360p/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=2800000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2"
720p/index.m3u8
#EXT-X-STREAM-INF:BANDWIDTH=1400000,RESOLUTION=842x480
https://cdn.test/480p/index.m3u8
"""

MEDIA = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:4
#EXT-X-MEDIA-SEQUENCE:120
#EXTINF:4.000,
seg120.ts
#EXTINF:4.000,
seg121.ts
"""

BASE = "https://video.test/live/master.m3u8"


class FakeFetch:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        return page


class FakeMedia:
    kind = "video"

    def __init__(self):
        self.sources = []

    def set_media_source(self, source):
        self.sources.append(source)


def test_is_hls_url():
    assert is_hls_url("https://video.test/live/index.m3u8")
    assert is_hls_url("https://video.test/live/INDEX.M3U8?token=abc")
    assert not is_hls_url("https://video.test/live.mp4")
    assert not is_hls_url("")


def test_attribute_list_keeps_quoted_commas():
    attrs = parse_attribute_list('BANDWIDTH=800000,CODECS="avc1.4d401e,mp4a.40.2",resolution=640x360')
    assert attrs == {"BANDWIDTH": "800000", "CODECS": "avc1.4d401e,mp4a.40.2", "RESOLUTION": "640x360"}


def test_master_playlist_variants():
    variants = parse_master_playlist(MASTER, BASE)
    assert [v.uri for v in variants] == [
        "https://video.test/live/360p/index.m3u8",
        "https://video.test/live/720p/index.m3u8",
        "https://cdn.test/480p/index.m3u8",
    ]
    assert variants[0].resolution == (640, 360)
    assert variants[0].codecs == "avc1.4d401e,mp4a.40.2"
    assert select_variant(variants).bandwidth == 2800000


def test_media_playlist():
    playlist = parse_media_playlist(MEDIA, "https://video.test/live/720p/index.m3u8")
    assert playlist.target_duration == 4.0
    assert playlist.media_sequence == 120
    assert playlist.segments == [
        "https://video.test/live/720p/seg120.ts",
        "https://video.test/live/720p/seg121.ts",
    ]
    assert not playlist.ended
    assert parse_media_playlist(MEDIA + "#EXT-X-ENDLIST\n", BASE).ended


def test_missing_header_is_fatal():
    with pytest.raises(HlsError) as excinfo:
        parse_media_playlist("<html>not found</html>", BASE)
    assert excinfo.value.fatal


def test_master_without_variants_is_fatal():
    with pytest.raises(HlsError) as excinfo:
        parse_master_playlist("#EXTM3U\n#EXT-X-VERSION:3\n", BASE)
    assert excinfo.value.fatal


def test_engine_publishes_variant_once_media_is_attached(qapp):
    fetch = FakeFetch({BASE: MASTER, "https://video.test/live/720p/index.m3u8": MEDIA})
    engine = HlsEngine(low_latency=True, enable_worker=False, fetch=fetch)
    parsed = []
    engine.manifestParsed.connect(parsed.append)
    media = FakeMedia()

    engine.load_source(BASE)
    assert parsed == []
    engine.attach_media(media)

    assert parsed == ["https://video.test/live/720p/index.m3u8"]
    assert len(media.sources) == 1
    source = media.sources[0]
    assert isinstance(source, HlsMediaSource)
    assert source.url == "https://video.test/live/720p/index.m3u8"
    assert "-live_start_index" in source.input_args
    assert engine.url == BASE


def test_engine_attach_before_load(qapp):
    url = "https://video.test/live/720p/index.m3u8"
    engine = HlsEngine(low_latency=False, enable_worker=False, fetch=FakeFetch({url: MEDIA}))
    media = FakeMedia()
    engine.attach_media(media)
    engine.load_source(url)
    assert media.sources == [HlsMediaSource(url, ())]


def test_engine_load_failure_is_fatal_after_retries(qapp, monkeypatch):
    monkeypatch.setattr(ManifestWorker, "RETRY_DELAY_SEC", 0.0)
    fetch = FakeFetch({BASE: URLError("timed out")})
    engine = HlsEngine(enable_worker=False, fetch=fetch)
    errors = []
    engine.errorOccurred.connect(errors.append)

    engine.load_source(BASE)
    assert len(fetch.calls) == 3
    assert len(errors) == 1
    assert errors[0].fatal
    assert "timed out" in errors[0].details


def test_destroyed_engine_refuses_work(qapp):
    engine = HlsEngine(enable_worker=False, fetch=FakeFetch({}))
    engine.destroy()
    assert engine.is_destroyed
    with pytest.raises(RuntimeError):
        engine.load_source(BASE)
    with pytest.raises(RuntimeError):
        engine.attach_media(FakeMedia())
    engine.destroy()


def test_level_polling_turns_fatal_after_repeated_failures(monkeypatch):
    monkeypatch.setattr(ManifestWorker, "MIN_POLL_SEC", 0.0)
    url = "https://video.test/live/720p/index.m3u8"
    fetch = FakeFetch({url: OSError("connection reset")})
    events = []
    worker = ManifestWorker(url, lambda kind, payload: events.append((kind, payload)), fetch)
    playlist = parse_media_playlist(MEDIA.replace("TARGETDURATION:4", "TARGETDURATION:0"), url)

    worker._poll_level(url, playlist)
    assert [kind for kind, _ in events] == ["error", "error", "error"]
    assert [payload.fatal for _, payload in events] == [False, False, True]


def test_level_polling_reports_new_sequence_until_endlist(monkeypatch):
    monkeypatch.setattr(ManifestWorker, "MIN_POLL_SEC", 0.0)
    url = "https://video.test/live/720p/index.m3u8"
    pages = iter([
        MEDIA.replace("SEQUENCE:120", "SEQUENCE:121").replace("TARGETDURATION:4", "TARGETDURATION:0"),
        MEDIA.replace("SEQUENCE:120", "SEQUENCE:122").replace("TARGETDURATION:4", "TARGETDURATION:0")
        + "#EXT-X-ENDLIST\n",
    ])
    events = []
    worker = ManifestWorker(url, lambda kind, payload: events.append((kind, payload)), lambda _url: next(pages))
    playlist = parse_media_playlist(MEDIA.replace("TARGETDURATION:4", "TARGETDURATION:0"), url)

    worker._poll_level(url, playlist)
    assert events == [("level", 121), ("level", 122)]


def test_unexpected_fetch_failure_is_reported_as_fatal(qapp, monkeypatch):
    monkeypatch.setattr(ManifestWorker, "RETRY_DELAY_SEC", 0.0)
    fetch = FakeFetch({BASE: IncompleteRead(b"#EXTM3U")})
    engine = HlsEngine(enable_worker=False, fetch=fetch)
    errors = []
    engine.errorOccurred.connect(errors.append)

    engine.load_source(BASE)
    assert len(fetch.calls) == 3
    assert len(errors) == 1
    assert errors[0].fatal


def test_relative_manifest_url_is_reported_as_fatal(qapp):
    engine = HlsEngine(enable_worker=False)
    errors = []
    engine.errorOccurred.connect(errors.append)

    engine.load_source("/streams/live.m3u8")
    assert len(errors) == 1
    assert errors[0].fatal
    assert errors[0].error_type == OTHER_ERROR


def test_worker_thread_reports_parser_crash(qapp):
    def broken_fetch(url):
        raise KeyError(url)

    events = []
    worker = ManifestWorker(BASE, lambda kind, payload: events.append((kind, payload)), broken_fetch)
    worker.start()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert [kind for kind, _ in events] == ["error"]
    assert events[0][1].fatal


def test_level_polling_stops_on_unexpected_failure(monkeypatch):
    monkeypatch.setattr(ManifestWorker, "MIN_POLL_SEC", 0.0)
    url = "https://video.test/live/720p/index.m3u8"
    fetch = FakeFetch({url: ValueError("bad playlist")})
    events = []
    worker = ManifestWorker(url, lambda kind, payload: events.append((kind, payload)), fetch)
    playlist = parse_media_playlist(MEDIA.replace("TARGETDURATION:4", "TARGETDURATION:0"), url)

    worker._poll_level(url, playlist)
    assert len(fetch.calls) == 1
    assert [payload.fatal for _, payload in events] == [True]
