"""
End-to-end turn-taking scenarios for TurnOrchestrator, driven by fakes.
"""

import asyncio

from meera.errors import ChatRequestError
from meera.models import CaptureErrorKind, SessionState
from meera.store import ConversationStore
from fakes import FakeCapture, FakeChat, FakeOutput, FakeSynth, wait_until

LONG_REPLY = "This reply is long enough that the reveal is still running when we interrupt it."


def contents(orchestrator):
    return [(t.role, t.content) for t in orchestrator.store.turns]


class TestTypedTurns:
    """Typed submissions without capture or audio."""

    def test_reply_is_revealed_and_stored(self, make_orchestrator, history_path):
        prefixes, states = [], []

        async def scenario():
            orch = make_orchestrator(chat=FakeChat("Hi there!"))
            orch.on_reveal = prefixes.append
            orch.on_state = states.append
            assert orch.submit("Hello")
            assert orch.state is SessionState.SUBMITTING
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert contents(orch) == [("user", "Hello"), ("model", "Hi there!")]
        assert [t.status for t in orch.store.turns] == ["confirmed", "confirmed"]
        assert prefixes[-1] == "Hi there!"
        assert prefixes.count("Hi there!") == 1
        for shorter, longer in zip(prefixes, prefixes[1:]):
            assert longer.startswith(shorter)
        assert states == [SessionState.SUBMITTING, SessionState.REVEALING, SessionState.IDLE]
        assert orch.state is SessionState.IDLE
        assert orch.notifications == []

        reloaded = ConversationStore(history_path)
        assert [(t.role, t.content) for t in reloaded.turns] == contents(orch)

    def test_empty_submission_is_rejected_locally(self, make_orchestrator):
        chat = FakeChat()

        async def scenario():
            orch = make_orchestrator(chat=chat)
            accepted = orch.submit("   ")
            await asyncio.sleep(0.01)
            return orch, accepted

        orch, accepted = asyncio.run(scenario())

        assert accepted is False
        assert len(orch.store) == 0
        assert chat.calls == []
        assert orch.state is SessionState.IDLE

    def test_second_submission_while_in_flight_is_rejected(self, make_orchestrator):
        async def scenario():
            gate = asyncio.Event()
            chat = FakeChat(gate=gate)
            orch = make_orchestrator(chat=chat)
            first = orch.submit("one")
            second = orch.submit("two")
            await asyncio.sleep(0.01)
            calls = len(chat.calls)
            gate.set()
            await orch.settle(timeout=2)
            return orch, first, second, calls

        orch, first, second, calls = asyncio.run(scenario())

        assert (first, second) == (True, False)
        assert calls == 1
        assert contents(orch) == [("user", "one"), ("model", "Hi there!")]

    def test_reveal_never_shows_the_previous_reply(self, make_orchestrator):
        shown_on_entry, prefixes = [], []

        async def scenario():
            synth = FakeSynth(gate=asyncio.Event())
            orch = make_orchestrator(
                chat=FakeChat("First reply.", "Second reply."),
                synth=synth,
                output=FakeOutput(),
                reveal_interval=0.02,
                synthesis_timeout=0.05,
            )

            def on_state(state):
                if state is SessionState.REVEALING:
                    shown_on_entry.append(orch.displayed)
                    prefixes.clear()

            orch.on_state = on_state
            orch.on_reveal = prefixes.append
            orch.submit("one")
            await orch.settle(timeout=5)
            orch.submit("two")
            await orch.settle(timeout=5)
            return orch

        orch = asyncio.run(scenario())

        assert shown_on_entry == ["", ""]
        assert prefixes[-1] == "Second reply."
        assert all("Second reply.".startswith(p) for p in prefixes)
        assert contents(orch)[-1] == ("model", "Second reply.")

    def test_history_is_sent_with_each_request(self, make_orchestrator):
        chat = FakeChat("first", "second")

        async def scenario():
            orch = make_orchestrator(chat=chat)
            orch.submit("Hello")
            await orch.settle(timeout=2)
            orch.submit("And then?")
            await orch.settle(timeout=2)

        asyncio.run(scenario())

        history, message = chat.calls[1]
        assert message == "And then?"
        assert [(h.role, h.content[0].text) for h in history] == [("user", "Hello"), ("model", "first")]
        assert chat.calls[0][0] == []


class TestFailures:
    """Chat and synthesis failures."""

    def test_chat_failure_rolls_back_and_notifies(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(chat=FakeChat(error=ChatRequestError("HTTP 500")), capture=capture)
            orch.listen()
            capture.say("Hello")
            assert orch.state is SessionState.SUBMITTING
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert len(orch.store) == 0
        assert [n.message for n in orch.notifications] == ["Failed to get a response. Please try again."]
        assert orch.notifications[0].level == "error"
        assert orch.state is SessionState.LISTENING
        assert capture.starts == 2

    def test_retain_policy_keeps_failed_turn_in_history(self, make_orchestrator):
        chat = FakeChat("Recovered", error=ChatRequestError("timeout"))

        async def scenario():
            orch = make_orchestrator(chat=chat, rollback_policy="retain")
            orch.submit("Hello")
            await orch.settle(timeout=2)
            chat.error = None
            orch.submit("Again")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert [(t.content, t.status) for t in orch.store.turns] == [
            ("Hello", "failed"),
            ("Again", "confirmed"),
            ("Recovered", "confirmed"),
        ]
        assert [h.content[0].text for h in chat.calls[1][0]] == ["Hello"]

    def test_on_success_policy_does_not_rearm_after_failure(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(
                chat=FakeChat(error=ChatRequestError("boom")), capture=capture, restart_policy="on_success"
            )
            orch.listen()
            capture.say("Hello")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.IDLE
        assert capture.starts == 1

    def test_synthesis_failure_reveals_silently(self, make_orchestrator):
        output = FakeOutput()

        async def scenario():
            orch = make_orchestrator(synth=FakeSynth(error="boom"), output=output)
            orch.submit("Hello")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert contents(orch) == [("user", "Hello"), ("model", "Hi there!")]
        assert output.played == []
        assert orch.notifications == []
        assert orch.state is SessionState.IDLE

    def test_synthesis_exception_reveals_silently(self, make_orchestrator):
        async def scenario():
            orch = make_orchestrator(synth=FakeSynth(raises=RuntimeError("tts down")), output=FakeOutput())
            orch.submit("Hello")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert contents(orch)[-1] == ("model", "Hi there!")

    def test_hung_synthesis_does_not_hold_back_the_text(self, make_orchestrator):
        output = FakeOutput()

        async def scenario():
            loop = asyncio.get_running_loop()
            orch = make_orchestrator(synth=FakeSynth(gate=asyncio.Event()), output=output, synthesis_timeout=0.3)
            started = loop.time()
            orch.submit("Hello")
            await wait_until(lambda: orch.displayed == "Hi there!")
            shown_after = loop.time() - started
            revealing = orch.state is SessionState.REVEALING
            await orch.settle(timeout=2)
            return orch, shown_after, revealing

        orch, shown_after, revealing = asyncio.run(scenario())

        assert shown_after < 0.3
        assert revealing
        assert orch.state is SessionState.IDLE
        assert contents(orch) == [("user", "Hello"), ("model", "Hi there!")]
        assert output.played == []

    def test_failed_notification_can_be_dismissed(self, make_orchestrator):
        async def scenario():
            orch = make_orchestrator(chat=FakeChat(error=ChatRequestError("HTTP 500")))
            orch.submit("Hello")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())
        notification_id = orch.notifications[0].id

        assert orch.dismiss_notification(notification_id) is True
        assert orch.notifications == []
        assert orch.dismiss_notification(notification_id) is False
        assert orch.snapshot()["notifications"] == []


class TestVoiceTurns:
    """Capture, audio and the listen/submit/reveal cycle."""

    def test_voice_turn_with_audio(self, make_orchestrator):
        capture = FakeCapture()
        output = FakeOutput(auto_finish=False)
        overlaps = []

        async def scenario():
            orch = make_orchestrator(capture=capture, synth=FakeSynth(), output=output)
            def check_exclusive(state):
                if capture.listening and state in (SessionState.SUBMITTING, SessionState.REVEALING):
                    overlaps.append(state)

            orch.on_state = check_exclusive
            orch.listen()
            assert orch.state is SessionState.LISTENING

            capture.hear("Hel")
            assert orch.transcript == "Hel"
            capture.say("Hello")
            assert orch.state is SessionState.SUBMITTING
            assert not capture.listening

            await wait_until(lambda: orch.displayed == "Hi there!" and output.played)
            await asyncio.sleep(0.02)
            still_revealing = orch.state is SessionState.REVEALING
            output.played[0].finish()
            await orch.settle(timeout=2)
            return orch, still_revealing

        orch, still_revealing = asyncio.run(scenario())

        assert still_revealing
        assert overlaps == []
        assert len(output.played) == 1
        assert contents(orch) == [("user", "Hello"), ("model", "Hi there!")]
        assert orch.transcript == ""
        assert orch.state is SessionState.LISTENING
        assert capture.starts == 2

    def test_reply_is_spoken_sentence_by_sentence(self, make_orchestrator):
        output = FakeOutput()
        synth = FakeSynth()
        reply = "First one. Second one! Third?"

        async def scenario():
            orch = make_orchestrator(chat=FakeChat(reply), synth=synth, output=output)
            orch.submit("Hello")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert synth.calls == ["First one.", "Second one!", "Third?"]
        assert len(output.played) == 3
        assert all(handle.finished for handle in output.played)
        assert contents(orch)[-1] == ("model", reply)
        assert orch.state is SessionState.IDLE

    def test_grace_delay_before_listening_again(self, make_orchestrator):
        capture = FakeCapture()
        timeline = []

        async def scenario():
            loop = asyncio.get_running_loop()
            orch = make_orchestrator(capture=capture, grace_delay=0.2)
            orch.on_state = lambda state: timeline.append((state, loop.time(), capture.starts, capture.listening))
            orch.listen()
            capture.say("Hello")
            await wait_until(lambda: orch.state is SessionState.IDLE)
            await asyncio.sleep(0.1)
            midway = (orch.state, capture.starts, capture.listening)
            await orch.settle(timeout=2)
            return orch, midway

        orch, midway = asyncio.run(scenario())

        assert [entry[0] for entry in timeline] == [
            SessionState.LISTENING,
            SessionState.SUBMITTING,
            SessionState.REVEALING,
            SessionState.IDLE,
            SessionState.LISTENING,
        ]
        idle, relisten = timeline[3], timeline[4]
        assert idle[2:] == (1, False)
        assert midway == (SessionState.IDLE, 1, False)
        assert relisten[1] - idle[1] >= 0.18
        assert orch.state is SessionState.LISTENING
        assert capture.starts == 2

    def test_restart_after_capture_ends_is_debounced(self, make_orchestrator):
        capture = FakeCapture()
        timeline = []

        async def scenario():
            loop = asyncio.get_running_loop()
            orch = make_orchestrator(capture=capture, restart_debounce=0.2)
            orch.listen()
            orch.on_state = lambda state: timeline.append((state, loop.time()))
            capture.end()
            await asyncio.sleep(0.1)
            midway = (orch.state, capture.starts)
            await orch.settle(timeout=2)
            return orch, midway

        orch, midway = asyncio.run(scenario())

        assert midway == (SessionState.IDLE, 1)
        assert [state for state, _ in timeline] == [SessionState.IDLE, SessionState.LISTENING]
        assert timeline[1][1] - timeline[0][1] >= 0.18
        assert capture.starts == 2

    def test_never_policy_stays_idle_after_reply(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(capture=capture, restart_policy="never")
            orch.listen()
            capture.say("Hello")
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.IDLE
        assert capture.starts == 1

    def test_capture_ending_on_its_own_restarts(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(capture=capture)
            orch.listen()
            capture.end()
            assert orch.state is SessionState.IDLE
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.LISTENING
        assert capture.starts == 2

    def test_capture_started_out_of_turn_is_stopped(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            gate = asyncio.Event()
            orch = make_orchestrator(chat=FakeChat(gate=gate), capture=capture)
            orch.listen()
            capture.say("Hello")
            capture.started()
            listening = capture.listening
            gate.set()
            await orch.settle(timeout=2)
            return listening

        assert asyncio.run(scenario()) is False
        assert capture.stops == 2

    def test_no_speech_is_silent(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(capture=capture)
            orch.listen()
            capture.fail(CaptureErrorKind.NO_SPEECH)
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.LISTENING
        assert orch.notifications == []

    def test_permission_denied_blocks_until_retry(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(capture=capture)
            orch.listen()
            capture.fail(CaptureErrorKind.PERMISSION_DENIED)
            after_error = orch.state
            orch.listen()
            capture.fail(CaptureErrorKind.PERMISSION_DENIED)
            blocked_state = orch.state
            orch.retry_capture()
            return orch, after_error, blocked_state

        orch, after_error, blocked_state = asyncio.run(scenario())

        assert after_error is SessionState.IDLE
        assert blocked_state is SessionState.IDLE
        assert len(orch.notifications) == 1
        assert orch.notifications[0].persistent is True
        assert orch.notifications[0].action == "retry-capture"
        assert orch.capture_blocked is None
        assert orch.state is SessionState.LISTENING
        assert capture.starts == 2

    def test_other_errors_go_idle_without_notification(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            orch = make_orchestrator(capture=capture)
            orch.listen()
            capture.fail(CaptureErrorKind.OTHER)
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.IDLE
        assert orch.notifications == []

    def test_unsupported_capture_leaves_typing_available(self, make_orchestrator):
        async def scenario():
            orch = make_orchestrator(capture=FakeCapture(supported=False))
            orch.listen()
            state = orch.state
            orch.submit("Hello")
            await orch.settle(timeout=2)
            return orch, state

        orch, state = asyncio.run(scenario())

        assert state is SessionState.IDLE
        assert contents(orch)[-1] == ("model", "Hi there!")


class TestInterruptions:
    """Preemption, mute and clear."""

    def test_new_submission_preempts_reveal_and_audio(self, make_orchestrator):
        output = FakeOutput(auto_finish=False)
        chat = FakeChat(LONG_REPLY, "Second reply")

        async def scenario():
            orch = make_orchestrator(chat=chat, synth=FakeSynth(), output=output, reveal_interval=0.02)
            orch.submit("one")
            await wait_until(lambda: orch.displayed and output.played)
            first_handle = output.played[0]
            output.auto_finish = True
            assert orch.submit("two")
            preempted = (orch.state, orch.animator.active, first_handle.stopped)
            await orch.settle(timeout=5)
            return orch, preempted

        orch, preempted = asyncio.run(scenario())

        assert preempted == (SessionState.SUBMITTING, False, True)
        assert contents(orch) == [
            ("user", "one"),
            ("model", LONG_REPLY),
            ("user", "two"),
            ("model", "Second reply"),
        ]
        assert [h.content[0].text for h in chat.calls[1][0]] == ["one", LONG_REPLY]

    def test_mute_during_reveal_finishes_text_and_stops_audio(self, make_orchestrator):
        capture = FakeCapture()
        output = FakeOutput(auto_finish=False)

        async def scenario():
            orch = make_orchestrator(
                chat=FakeChat(LONG_REPLY), capture=capture, synth=FakeSynth(), output=output, reveal_interval=0.02
            )
            orch.listen()
            capture.say("Hello")
            await wait_until(lambda: orch.displayed and output.played)
            orch.mute()
            await asyncio.sleep(0.05)
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.IDLE
        assert contents(orch)[-1] == ("model", LONG_REPLY)
        assert output.played[0].stopped
        assert not capture.listening
        assert orch.listen_enabled is False

    def test_mute_during_request_keeps_reply_without_reveal(self, make_orchestrator):
        prefixes = []

        async def scenario():
            gate = asyncio.Event()
            orch = make_orchestrator(chat=FakeChat(gate=gate))
            orch.on_reveal = prefixes.append
            orch.submit("Hello")
            orch.mute()
            assert orch.state is SessionState.IDLE
            gate.set()
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert contents(orch) == [("user", "Hello"), ("model", "Hi there!")]
        assert prefixes == []
        assert orch.state is SessionState.IDLE

    def test_clear_drops_late_reply(self, make_orchestrator):
        async def scenario():
            gate = asyncio.Event()
            orch = make_orchestrator(chat=FakeChat(gate=gate))
            orch.submit("Hello")
            orch.clear_conversation()
            gate.set()
            await orch.settle(timeout=2)
            return orch

        orch = asyncio.run(scenario())

        assert len(orch.store) == 0
        assert orch.state is SessionState.IDLE

    def test_close_stops_everything(self, make_orchestrator):
        capture = FakeCapture()

        async def scenario():
            gate = asyncio.Event()
            orch = make_orchestrator(chat=FakeChat(gate=gate), capture=capture)
            orch.listen()
            orch.submit("Hello")
            await orch.close()
            return orch

        orch = asyncio.run(scenario())

        assert orch.state is SessionState.IDLE
        assert not orch.busy
        assert not capture.listening

    def test_snapshot(self, make_orchestrator):
        async def scenario():
            orch = make_orchestrator()
            orch.submit("Hello")
            await orch.settle(timeout=2)
            return orch.snapshot()

        snap = asyncio.run(scenario())

        assert snap["state"] == "idle"
        assert snap["busy"] is False
        assert [t["content"] for t in snap["turns"]] == ["Hello", "Hi there!"]
        assert snap["capture_supported"] is False
