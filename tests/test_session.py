import asyncio
import base64
import json
import sys
import time
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from common.errors import PermissionDenied, TransportError
from common.types import AudioFrame, CompanionState, Location, Speaker
from companion import protocol
from companion.session import AudioSessionManager
from companion.tools import FindNearbyPlaces, NowPlaying, PlaySpotifySong, ToolBox
from companion.transcript import ConversationLog
from fakes import Rig, spin


def make_session(rig, lookup=None, location=None):
    log = ConversationLog()
    box = ToolBox(FindNearbyPlaces(lambda: location, lookup), PlaySpotifySong(NowPlaying()))
    states = []
    closed = []
    mgr = AudioSessionManager(rig.connect, box, log, capture_factory=rig.capture,
                              speaker_factory=rig.speaker, on_state=states.append,
                              on_closed=closed.append)
    return mgr, log, states, closed


def msg(payload):
    return protocol.parse_server_message(json.dumps(payload))


def audio_payload(n_samples):
    pcm = np.zeros(n_samples, dtype="<i2").tobytes()
    return {"serverContent": {"modelTurn": {"parts": [
        {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": base64.b64encode(pcm).decode()}}]}}}


def test_open_starts_audio_and_sends_prompt():
    async def main():
        rig = Rig()
        mgr, _, states, _ = make_session(rig)
        assert await mgr.open("The driver seems drowsy.")
        assert not await mgr.open()
        sent = list(rig.transports[0].sent)
        await mgr.close()
        await spin()
        return rig, mgr, states, sent

    rig, mgr, states, sent = asyncio.run(main())
    assert sent == [protocol.text_input("The driver seems drowsy.")]
    assert rig.speakers[0].started
    assert not rig.captures[0].running
    assert rig.speakers[0].drained
    assert states == [CompanionState.LISTENING, CompanionState.IDLE]
    assert mgr.state is CompanionState.IDLE


def test_captured_frames_are_sent_until_close():
    async def main():
        rig = Rig()
        mgr, _, _, _ = make_session(rig)
        await mgr.open()
        capture = rig.captures[0]
        frame = AudioFrame(id=0, ts=time.time(), rms_db=-20.0, pcm=b"\x01\x00" * 4, sample_rate=16000)
        capture.on_frame(frame)
        await spin()
        before = len(rig.transports[0].of_kind("realtimeInput"))
        await mgr.close()
        capture.on_frame(frame)
        await spin()
        after = len(rig.transports[0].of_kind("realtimeInput"))
        return before, after

    before, after = asyncio.run(main())
    assert before == 1
    assert after == 1


def test_turn_complete_flushes_transcripts():
    async def main():
        rig = Rig()
        mgr, log, states, _ = make_session(rig)
        await mgr.open()
        mgr.handle(msg({"serverContent": {"inputTranscription": {"text": "tell me "}}}))
        mgr.handle(msg({"serverContent": {"inputTranscription": {"text": "a joke"}}}))
        mgr.handle(msg({"serverContent": {"outputTranscription": {"text": " Why did the"}}}))
        mid = mgr.state
        mgr.handle(msg({"serverContent": {"outputTranscription": {"text": " car nap? "}, "turnComplete": True}}))
        await mgr.close()
        return log, mid, states, mgr

    log, mid, states, mgr = asyncio.run(main())
    assert mid is CompanionState.SPEAKING
    assert [(e.speaker, e.text) for e in log.entries] == [
        (Speaker.USER, "tell me a joke"),
        (Speaker.MIRA, "Why did the car nap?"),
    ]
    assert CompanionState.LISTENING in states[1:]
    assert mgr.turn.input_text == "" and mgr.turn.output_text == ""


def test_blank_turn_produces_no_entries():
    async def main():
        rig = Rig()
        mgr, log, _, _ = make_session(rig)
        await mgr.open()
        mgr.handle(msg({"serverContent": {"inputTranscription": {"text": "   "}}}))
        mgr.handle(msg({"serverContent": {"outputTranscription": {"text": "\n\t"}, "turnComplete": True}}))
        await mgr.close()
        return log

    assert asyncio.run(main()).entries == []


def test_audio_chunks_are_scheduled_gaplessly():
    async def main():
        rig = Rig()
        mgr, _, _, _ = make_session(rig)
        await mgr.open()
        speaker = rig.speakers[0]
        speaker.now = 1.0
        starts = []
        for n, now in [(12000, 1.0), (7200, 1.05), (9600, 1.2)]:
            speaker.now = now
            mgr.handle(msg(audio_payload(n)))
            starts.append(speaker.scheduler.cursor.next_start_time)
        await mgr.close()
        mgr.handle(msg(audio_payload(2400)))
        return starts, speaker

    starts, speaker = asyncio.run(main())
    assert np.allclose(starts, [1.5, 1.8, 2.2])
    assert speaker.scheduler.pending == 3


def test_tool_calls_each_get_one_correlated_result():
    async def main():
        async def lookup(query, loc):
            raise RuntimeError("maps down")

        rig = Rig()
        mgr, _, states, _ = make_session(rig, lookup=lookup, location=Location(latitude=1, longitude=2))
        await mgr.open()
        mgr.handle(msg({"toolCall": {"functionCalls": [
            {"id": "c1", "name": "find_nearby_places", "args": {"query": "rest area"}},
            {"id": "c2", "name": "play_spotify_song", "args": {"songName": "Drive", "artist": "Incubus"}},
        ]}}))
        thinking = mgr.state
        await mgr.wait_tools()
        responses = rig.transports[0].of_kind("toolResponse")
        await mgr.close()
        return thinking, responses

    thinking, responses = asyncio.run(main())
    assert thinking is CompanionState.THINKING
    by_id = {r["toolResponse"]["functionResponses"][0]["id"]: r["toolResponse"]["functionResponses"][0]
             for r in responses}
    assert sorted(by_id) == ["c1", "c2"]
    assert len(responses) == 2
    assert "trouble" in by_id["c1"]["response"]["result"]
    assert by_id["c2"]["response"]["result"] == "Now playing Drive by Incubus. Enjoy!"


def test_invalid_call_does_not_sink_its_batch():
    async def main():
        rig = Rig()
        mgr, _, _, closed = make_session(rig)
        await mgr.open()
        transport = rig.transports[0]
        transport.inbox.put_nowait(json.dumps({"toolCall": {"functionCalls": [
            {"id": "good", "name": "play_spotify_song", "args": {"songName": "Drive", "artist": "Incubus"}},
            {"id": "bad", "name": "find_nearby_places", "args": None},
            {"name": "play_spotify_song"},
        ]}}))
        await spin()
        await mgr.wait_tools()
        responses = transport.of_kind("toolResponse")
        await mgr.close()
        return responses, closed

    responses, closed = asyncio.run(main())
    by_id = {r["toolResponse"]["functionResponses"][0]["id"]: r["toolResponse"]["functionResponses"][0]
             for r in responses}
    assert len(responses) == 2
    assert by_id["good"]["response"]["result"] == "Now playing Drive by Incubus. Enjoy!"
    assert by_id["bad"]["name"] == "find_nearby_places"
    assert "incomplete" in by_id["bad"]["response"]["result"]
    assert closed == ["closed"]


def test_events_keep_flowing_while_a_tool_is_pending():
    async def main():
        release = asyncio.Event()

        async def lookup(query, loc):
            await release.wait()
            return "Found a diner."

        rig = Rig()
        mgr, log, _, _ = make_session(rig, lookup=lookup, location=Location(latitude=0, longitude=0))
        await mgr.open()
        transport = rig.transports[0]
        transport.inbox.put_nowait(json.dumps({"toolCall": {"functionCalls": [
            {"id": "slow", "name": "find_nearby_places", "args": {"query": "diner"}}]}}))
        transport.inbox.put_nowait(json.dumps({"serverContent": {
            "outputTranscription": {"text": "Let me check."}, "turnComplete": True}}))
        await spin()
        entries_before = [e.text for e in log.entries]
        results_before = len(transport.of_kind("toolResponse"))
        release.set()
        await mgr.wait_tools()
        results_after = len(transport.of_kind("toolResponse"))
        await mgr.close()
        return entries_before, results_before, results_after

    entries, before, after = asyncio.run(main())
    assert entries == ["Let me check."]
    assert before == 0
    assert after == 1


def test_tool_result_discarded_after_close():
    async def main():
        release = asyncio.Event()

        async def lookup(query, loc):
            await release.wait()
            return "too late"

        rig = Rig()
        mgr, _, _, _ = make_session(rig, lookup=lookup, location=Location(latitude=0, longitude=0))
        await mgr.open()
        mgr.handle(msg({"toolCall": {"functionCalls": [
            {"id": "x", "name": "find_nearby_places", "args": {"query": "fuel"}}]}}))
        await mgr.close()
        release.set()
        await mgr.wait_tools()
        return rig.transports[0].of_kind("toolResponse")

    assert asyncio.run(main()) == []


def test_malformed_events_are_skipped():
    async def main():
        rig = Rig()
        mgr, log, _, closed = make_session(rig)
        await mgr.open()
        transport = rig.transports[0]
        for raw in ["{garbage", json.dumps({"serverContent": {"modelTurn": {"parts": [
                {"inlineData": {"data": "!!notbase64!!"}}]}}}),
                    json.dumps({"serverContent": {"inputTranscription": {"text": "still here"},
                                                  "turnComplete": True}})]:
            transport.inbox.put_nowait(raw)
        await spin()
        return log, mgr, closed

    log, mgr, closed = asyncio.run(main())
    assert [e.text for e in log.entries] == ["still here"]
    assert closed == []


def test_transport_error_ends_session_quietly():
    async def main():
        rig = Rig()
        mgr, _, _, closed = make_session(rig)
        await mgr.open()
        rig.transports[0].inbox.put_nowait(TransportError("reset by peer"))
        await spin()
        return mgr, closed, rig

    mgr, closed, rig = asyncio.run(main())
    assert closed == ["transport_error"]
    assert mgr.state is CompanionState.IDLE
    assert mgr.closed
    assert rig.transports[0].closed
    assert not rig.captures[0].running


def test_server_close_ends_session():
    async def main():
        rig = Rig()
        mgr, _, _, closed = make_session(rig)
        await mgr.open()
        rig.transports[0].inbox.put_nowait(None)
        await spin()
        return closed

    assert asyncio.run(main()) == ["server_closed"]


def test_connect_failure_returns_to_idle():
    async def main():
        async def refuse():
            raise TransportError("dns failure")

        log = ConversationLog()
        closed = []
        rig = Rig()
        mgr = AudioSessionManager(refuse, ToolBox(FindNearbyPlaces(lambda: None), PlaySpotifySong(NowPlaying())),
                                  log, rig.capture, rig.speaker, on_closed=closed.append)
        ok = await mgr.open()
        return ok, mgr, closed

    ok, mgr, closed = asyncio.run(main())
    assert not ok
    assert mgr.state is CompanionState.IDLE
    assert closed == ["connect_failed"]


def test_microphone_denied_closes_session_and_raises():
    async def main():
        rig = Rig()

        class DeniedCapture:
            def __init__(self, on_frame):
                pass

            def start(self):
                raise PermissionDenied("microphone unavailable")

            def stop(self):
                pass

        mgr, _, _, closed = make_session(rig)
        mgr._capture_factory = DeniedCapture
        try:
            await mgr.open()
        except PermissionDenied:
            return True, closed, rig
        return False, closed, rig

    raised, closed, rig = asyncio.run(main())
    assert raised
    assert closed == ["permission_denied"]
    assert rig.transports[0].closed


def test_unexpected_decode_error_does_not_end_stream():
    async def main():
        rig = Rig()
        mgr, log, _, closed = make_session(rig)
        await mgr.open()
        transport = rig.transports[0]
        transport.inbox.put_nowait("[" * 200000)
        transport.inbox.put_nowait(json.dumps({"serverContent": {
            "inputTranscription": {"text": "are you there"}, "turnComplete": True}}))
        await spin()
        return log, mgr, list(closed)

    log, mgr, closed = asyncio.run(main())
    assert [e.text for e in log.entries] == ["are you there"]
    assert not mgr.closed
    assert closed == []


def test_listener_error_is_skipped_and_stream_continues():
    async def main():
        rig = Rig()
        mgr, log, _, closed = make_session(rig)
        seen = []

        def flaky(entry):
            seen.append(entry.text)
            if entry.text == "first":
                raise RuntimeError("listener blew up")

        log.subscribe(flaky)
        await mgr.open()
        transport = rig.transports[0]
        for text in ["first", "second"]:
            transport.inbox.put_nowait(json.dumps({"serverContent": {
                "inputTranscription": {"text": text}, "turnComplete": True}}))
        await spin()
        return seen, mgr, list(closed)

    seen, mgr, closed = asyncio.run(main())
    assert seen == ["first", "second"]
    assert mgr.state is CompanionState.LISTENING
    assert closed == []


def test_unexpected_receive_failure_closes_session():
    async def main():
        rig = Rig()
        mgr, _, _, closed = make_session(rig)
        await mgr.open()
        rig.transports[0].inbox.put_nowait(RuntimeError("decoder state corrupted"))
        await spin()
        return mgr, closed, rig

    mgr, closed, rig = asyncio.run(main())
    assert closed == ["receive_error"]
    assert mgr.closed
    assert mgr.state is CompanionState.IDLE
    assert rig.transports[0].closed


def test_captured_level_is_tracked():
    async def main():
        rig = Rig()
        mgr, _, _, _ = make_session(rig)
        await mgr.open()
        before = mgr.mic_db
        rig.captures[0].on_frame(AudioFrame(id=1, ts=time.time(), rms_db=-32.5, pcm=b"\x00\x00",
                                            sample_rate=16000))
        await spin()
        after = mgr.mic_db
        await mgr.close()
        return before, after

    assert asyncio.run(main()) == (None, -32.5)
