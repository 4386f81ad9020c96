import numpy as np
import pytest

from audio.elements import ABORT_NEW_LOAD, ABORT_PAUSE, AudioElement, PlayRequest, VideoElement
from audio.hls import HlsMediaSource


@pytest.fixture
def element(qapp, monkeypatch):
    el = AudioElement()
    started = []
    monkeypatch.setattr(el, "_start_decoders", lambda: started.append(el.current_source))
    monkeypatch.setattr(el, "_start_output", lambda: True)
    monkeypatch.setattr(el, "_close_stream", lambda: None)
    el.started = started
    return el


def _ready(el):
    el._on_decoder_event(el._generation, "ready", "")


def test_play_request_settles_once(qapp):
    request = PlayRequest()
    seen = []
    request.then(lambda: seen.append("ok"), lambda reason: seen.append(reason))
    request.resolve()
    request.reject("late")
    assert seen == ["ok"]
    assert request.succeeded and not request.aborted


def test_then_on_settled_request_runs_immediately(qapp):
    request = PlayRequest()
    request.reject("nope", aborted=True)
    seen = []
    request.then(lambda: seen.append("ok"), seen.append)
    assert seen == ["nope"]
    assert request.aborted
    assert request.error == "nope"


def test_play_without_source_rejects(element):
    request = element.play()
    assert request.settled
    assert not request.succeeded
    assert request.error == "No media source assigned"
    assert element.started == []


def test_play_resolves_when_decoder_is_ready(element):
    playing = []
    element.playing.connect(lambda: playing.append(True))
    element.src = "http://radio.test/a.mp3"

    request = element.play()
    assert not request.settled
    assert element.started == ["http://radio.test/a.mp3"]
    _ready(element)
    assert request.succeeded
    assert playing == [True]
    assert not element.is_paused

    again = element.play()
    assert again.succeeded


def test_new_src_aborts_pending_play(element):
    element.src = "http://radio.test/a.mp3"
    request = element.play()
    element.src = "http://radio.test/b.mp3"
    assert request.aborted
    assert request.error == ABORT_NEW_LOAD


def test_pause_aborts_pending_play(element):
    paused = []
    element.paused.connect(lambda: paused.append(True))
    element.src = "http://radio.test/a.mp3"
    request = element.play()
    element.pause()
    assert request.aborted
    assert request.error == ABORT_PAUSE
    assert paused == [True]


def test_stale_decoder_events_are_ignored(element):
    element.src = "http://radio.test/a.mp3"
    old_generation = element._generation
    element.src = "http://radio.test/b.mp3"
    request = element.play()
    element._on_decoder_event(old_generation, "ready", "")
    assert not request.settled


def test_decoder_error_rejects_and_reports(element):
    errors = []
    element.errorOccurred.connect(errors.append)
    element.src = "http://radio.test/a.mp3"
    request = element.play()
    element._on_decoder_event(element._generation, "error", "404 Not Found")
    assert request.error == "404 Not Found"
    assert not request.aborted
    assert errors == ["404 Not Found"]
    assert element.is_paused


def test_render_applies_volume_then_processor(element):
    element.src = "http://radio.test/a.mp3"
    element.play()
    _ready(element)
    element.volume = 0.5
    seen = []

    def processor(block):
        seen.append(block.copy())
        return block * 2.0

    element.attach_processor(processor)
    element.buffer.push(np.ones((64, 2), dtype=np.float32))
    out = element.render(64)
    assert np.allclose(seen[0], 0.5)
    assert np.allclose(out, 1.0)


def test_render_is_silent_while_paused(element):
    element.buffer.push(np.ones((64, 2), dtype=np.float32))
    assert not element.render(64).any()


def test_drained_buffer_ends_playback(element):
    ended = []
    element.ended.connect(lambda: ended.append(True))
    element.src = "http://radio.test/a.mp3"
    element.play()
    _ready(element)
    element.buffer.push(np.ones((32, 2), dtype=np.float32))
    element.buffer.mark_eof()

    element.render(64)
    assert ended == [True]
    assert element.is_ended
    assert element.is_paused


def test_single_processor_binding(element):
    first = lambda block: block
    element.attach_processor(first)
    with pytest.raises(RuntimeError):
        element.attach_processor(lambda block: block)
    element.detach_processor(lambda block: block)
    assert element.processor is first
    element.detach_processor(first)
    assert element.processor is None


def test_volume_is_clamped(qapp):
    element = AudioElement()
    element.volume = 3
    assert element.volume == 1.0
    element.volume = -0.5
    assert element.volume == 0.0


def test_can_play_type(qapp):
    element = VideoElement()
    assert element.can_play_type("video/mp4") == "maybe"
    assert element.can_play_type("application/vnd.apple.mpegurl") == ""
    assert element.can_play_type("application/x-unknown") == ""
    assert VideoElement(native_hls=True).can_play_type("application/x-mpegURL") == "maybe"


def test_media_source_replaces_src(element):
    element.src = "http://radio.test/a.mp3"
    element.set_media_source(HlsMediaSource("http://video.test/720p.m3u8", ("-fflags", "nobuffer")))
    assert element.src == ""
    assert element.current_source == "http://video.test/720p.m3u8"
    assert element._input() == ("http://video.test/720p.m3u8", ("-fflags", "nobuffer"))


def test_url_resolver_maps_plain_sources(qapp):
    element = AudioElement(url_resolver=lambda url: "/cache/abc.mp3")
    element.src = "http://media.test/a.mp3"
    assert element._input() == ("/cache/abc.mp3", ())


def test_buffer_preset_switch_rebuilds_ring(element):
    ring = element.buffer
    element.set_buffer_preset("on_demand")
    assert element.buffer is ring
    element.set_buffer_preset("live")
    assert element.buffer is not ring


def test_settled_requests_are_not_kept_by_the_element(element):
    element.src = "http://radio.test/a.mp3"
    requests = [element.play() for _ in range(3)]
    _ready(element)
    assert all(r.succeeded for r in requests)
    assert all(r.parent() is None for r in requests)
    assert element.findChildren(PlayRequest) == []
    assert element._pending == []
