from __future__ import annotations

import asyncio

import pytest

from agents.fallback_validator import fallback_validation
from models.results import FollowupContext, FollowupResult, OverlapResult, ValidationResult
from models.session import NO_VALID_RESPONSE
from services.flow_controller import GIVE_UP_PHRASE, FlowController, FlowTransitionError
from services.question_script import QuestionScript


Q1 = "Do you smoke?"
Q2 = "How many per day?"
Q3 = "Have you had a heart condition?"
Q4 = "Anything else we should know?"


def _script(followups: dict | None = None) -> QuestionScript:
    return QuestionScript.from_payload(
        [
            {"id": "Q1", "section": "Lifestyle", "prompt": Q1, "type": "yes_no", "onNo": "Q3"},
            {
                "id": "Q2",
                "section": "Lifestyle",
                "prompt": Q2,
                "type": "number",
                "requires": {"id": "Q1", "answer": "YES"},
            },
            {
                "id": "Q3",
                "section": "Medical",
                "prompt": Q3,
                "type": "yes_no",
                "followups": followups or {"max": 2, "retryLimit": 2, "topic": "heart"},
            },
            {"id": "Q4", "section": "Closing", "prompt": Q4, "type": "open"},
        ]
    )


class RuleValidator:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def validate(self, question, question_type, transcript, choices=None):
        self.calls.append((question, question_type, transcript))
        return fallback_validation(question_type, transcript, choices)


class ScriptedValidator:
    def __init__(self, results: list[ValidationResult]):
        self.results = list(results)

    async def validate(self, question, question_type, transcript, choices=None):
        return self.results.pop(0)


class SlowValidator:
    async def validate(self, question, question_type, transcript, choices=None):
        await asyncio.sleep(5)
        return ValidationResult.invalid("too late")


class BrokenValidator:
    async def validate(self, question, question_type, transcript, choices=None):
        raise RuntimeError("backend exploded")


class FakeFollowups:
    def __init__(
        self,
        asks: list[str] | None = None,
        always_ask: str | None = None,
        allow: bool = True,
        configured: bool = True,
    ):
        self.asks = list(asks or [])
        self.always_ask = always_ask
        self.allow = allow
        self.configured = configured
        self.contexts: list[FollowupContext] = []
        self.overlap_calls: list[tuple[str, list[str]]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def generate_followup(self, context):
        self.contexts.append(context)
        if self.always_ask:
            return FollowupResult(ask=self.always_ask)
        if self.asks:
            return FollowupResult(ask=self.asks.pop(0))
        return FollowupResult.finished()

    async def check_overlap(self, candidate, upcoming):
        self.overlap_calls.append((candidate, list(upcoming)))
        return OverlapResult(allow=self.allow)


class FakeSpeech:
    def __init__(self, replies: list[str | None]):
        self.replies = list(replies)
        self.spoken: list[str] = []
        self.listens = 0

    async def speak(self, text: str) -> None:
        self.spoken.append(text)

    async def listen(self) -> str | None:
        self.listens += 1
        return self.replies.pop(0) if self.replies else None


def _controller(validator=None, followups=None, script=None, **kwargs) -> FlowController:
    return FlowController(
        script=script or _script(),
        validator=validator or RuleValidator(),
        followups=followups or FakeFollowups(configured=False),
        **kwargs,
    )


def test_start_speaks_first_prompt_without_mutating_input() -> None:
    controller = _controller()
    state = controller.new_state("s1")
    step = controller.start(state)

    assert step.utterances == [Q1]
    assert step.question_id == "Q1"
    assert step.awaiting_input
    assert step.state.phase == "listening"
    assert step.state.transcript[-1].role == "assistant"
    assert state.phase == "idle"
    assert state.transcript == []


def test_start_twice_is_rejected() -> None:
    controller = _controller()
    step = controller.start(controller.new_state("s1"))
    with pytest.raises(FlowTransitionError):
        controller.start(step.state)


@pytest.mark.asyncio
async def test_no_answer_jumps_to_skip_target() -> None:
    controller = _controller()
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "no")

    assert step.question_id == "Q3"
    assert step.utterances == [Q3]
    assert step.state.answers["Q1"].normalized == "NO"
    assert step.state.answers["Q1"].raw_transcript == "no"


@pytest.mark.asyncio
async def test_yes_answer_continues_to_conditional_question() -> None:
    controller = _controller()
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "yeah I do")

    assert step.question_id == "Q2"
    assert step.state.retry_count == 0
    assert [entry.role for entry in step.state.transcript] == ["assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_repeat_keeps_question_and_retry_count() -> None:
    controller = _controller()
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "maybe")
    assert step.state.retry_count == 1

    repeated = await controller.handle_transcript(step.state, "can you repeat that")

    assert repeated.utterances == [Q1]
    assert repeated.question_id == "Q1"
    assert repeated.state.retry_count == 1
    assert repeated.state.current_index == step.state.current_index


@pytest.mark.asyncio
async def test_retry_escalation_and_give_up() -> None:
    controller = _controller(retry_limit=3)
    step = controller.start(controller.new_state("s1"))

    first = await controller.handle_transcript(step.state, "maybe")
    assert first.utterances == ["Please answer with a clear yes or no.", Q1]
    assert first.state.retry_count == 1

    second = await controller.handle_transcript(first.state, "perhaps")
    assert second.utterances == ["Please answer with a clear yes or no. Let's try once more.", Q1]
    assert second.state.retry_count == 2

    third = await controller.handle_transcript(second.state, "who knows")
    assert third.utterances == [GIVE_UP_PHRASE, Q3]
    assert third.question_id == "Q3"
    assert third.state.answers["Q1"].normalized == NO_VALID_RESPONSE
    assert third.state.retry_count == 0


@pytest.mark.asyncio
async def test_give_up_ignores_on_no_branch() -> None:
    script = QuestionScript.from_payload(
        [
            {"id": "A", "prompt": "Continue?", "type": "yes_no", "onNo": "END"},
            {"id": "B", "prompt": "Tell me more.", "type": "open"},
        ]
    )
    controller = _controller(script=script, retry_limit=1)
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "hmm")

    assert not step.done
    assert step.question_id == "B"
    assert step.utterances == [GIVE_UP_PHRASE, "Tell me more."]


@pytest.mark.asyncio
async def test_on_no_end_terminates() -> None:
    script = QuestionScript.from_payload(
        [
            {"id": "A", "prompt": "Continue?", "type": "yes_no", "onNo": "END"},
            {"id": "B", "prompt": "Tell me more.", "type": "open"},
        ]
    )
    controller = _controller(script=script)
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "nope")

    assert step.done
    assert step.utterances == []
    assert step.state.current_index is None
    with pytest.raises(FlowTransitionError):
        await controller.handle_transcript(step.state, "hello")


@pytest.mark.asyncio
async def test_validator_explanation_is_spoken() -> None:
    validator = ScriptedValidator([ValidationResult.invalid("Your answer should be a yes or a no.")])
    controller = _controller(validator=validator)
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "blue")

    assert step.utterances == ["Your answer should be a yes or a no.", Q1]


@pytest.mark.asyncio
async def test_valid_result_without_value_counts_as_invalid() -> None:
    validator = ScriptedValidator([ValidationResult(valid=True, normalized="  ")])
    controller = _controller(validator=validator)
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "yes")

    assert step.state.retry_count == 1
    assert "Q1" not in step.state.answers


@pytest.mark.asyncio
async def test_capture_failure_is_empty_transcript() -> None:
    controller = _controller()
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, None)

    assert step.state.retry_count == 1
    assert step.question_id == "Q1"


@pytest.mark.asyncio
async def test_validator_timeout_uses_fallback() -> None:
    controller = _controller(validator=SlowValidator(), call_timeout_seconds=0.01)
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "yes")

    assert step.state.answers["Q1"].normalized == "YES"


@pytest.mark.asyncio
async def test_validator_error_uses_fallback() -> None:
    controller = _controller(validator=BrokenValidator())
    step = controller.start(controller.new_state("s1"))

    step = await controller.handle_transcript(step.state, "no")

    assert step.question_id == "Q3"


@pytest.mark.asyncio
async def test_followup_is_asked_then_flow_resumes() -> None:
    followups = FakeFollowups(asks=["Which heart condition was it?"])
    controller = _controller(followups=followups)
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")

    step = await controller.handle_transcript(step.state, "yes")

    assert step.is_followup
    assert step.utterances == ["Which heart condition was it?"]
    assert step.state.phase == "followup_listening"
    context = followups.contexts[0]
    assert context.section == "Medical"
    assert context.question_text == Q3
    assert context.last_answer == "YES"
    assert context.topic == "heart"
    assert context.upcoming_questions == [Q4]
    assert followups.overlap_calls == [("Which heart condition was it?", [Q4])]

    step = await controller.handle_transcript(step.state, "okay, angina")

    assert not step.is_followup
    assert step.question_id == "Q4"
    assert step.utterances == [Q4]
    assert step.state.section_pairs["Medical"][0].a == "angina"
    assert followups.contexts[1].previous_followups == ["Which heart condition was it?"]
    assert followups.contexts[1].last_answer == "angina"
    assert "Which heart condition was it?" not in step.state.answers


@pytest.mark.asyncio
async def test_followups_never_exceed_max() -> None:
    followups = FakeFollowups(always_ask="Anything more about that?")
    controller = _controller(followups=followups)
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")
    step = await controller.handle_transcript(step.state, "yes")

    exchanges = 0
    while step.is_followup:
        exchanges += 1
        step = await controller.handle_transcript(step.state, "it was mild")

    assert exchanges == 2
    assert len(followups.contexts) == 2
    assert step.question_id == "Q4"
    assert step.state.followup_count == 0


@pytest.mark.asyncio
async def test_overlap_denial_stops_followups_without_regenerating() -> None:
    followups = FakeFollowups(always_ask="Anything else we should know?", allow=False)
    controller = _controller(followups=followups)
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")

    step = await controller.handle_transcript(step.state, "yes")

    assert len(followups.contexts) == 1
    assert step.question_id == "Q4"
    assert step.utterances == [Q4]


@pytest.mark.asyncio
async def test_followups_skipped_when_backend_not_configured() -> None:
    followups = FakeFollowups(always_ask="Why?", configured=False)
    controller = _controller(followups=followups)
    step = controller.start(controller.new_state("s1"))
    assert step.state.followups_enabled is False
    step = await controller.handle_transcript(step.state, "no")

    step = await controller.handle_transcript(step.state, "yes")

    assert followups.contexts == []
    assert step.question_id == "Q4"


@pytest.mark.asyncio
async def test_followup_retry_limit_stops_without_sentinel() -> None:
    followups = FakeFollowups(always_ask="When was that?")
    controller = _controller(followups=followups)
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")
    step = await controller.handle_transcript(step.state, "yes")

    step = await controller.handle_transcript(step.state, "")
    assert step.is_followup
    assert step.utterances == ["Please provide a valid response.", "When was that?"]
    assert step.state.retry_count == 0
    assert step.state.followup.retry_count == 1

    step = await controller.handle_transcript(step.state, "   ")
    assert step.utterances == [GIVE_UP_PHRASE, Q4]
    assert len(followups.contexts) == 1
    assert set(step.state.answers) == {"Q1", "Q3"}
    assert NO_VALID_RESPONSE not in {record.normalized for record in step.state.answers.values()}


@pytest.mark.asyncio
async def test_followup_exhaustion_continues_when_not_stopping() -> None:
    followups = FakeFollowups(always_ask="When was that?")
    controller = _controller(
        followups=followups,
        script=_script({"max": 2, "retryLimit": 1, "stopOnNoResponse": False}),
    )
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")
    step = await controller.handle_transcript(step.state, "yes")

    step = await controller.handle_transcript(step.state, "")
    assert step.utterances == [GIVE_UP_PHRASE, "When was that?"]
    assert step.state.followup_count == 1

    step = await controller.handle_transcript(step.state, "")
    assert step.utterances == [GIVE_UP_PHRASE, Q4]
    assert len(followups.contexts) == 2


@pytest.mark.asyncio
async def test_followup_repeat_respeaks_candidate() -> None:
    followups = FakeFollowups(asks=["When was that?"])
    controller = _controller(followups=followups)
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")
    step = await controller.handle_transcript(step.state, "yes")

    step = await controller.handle_transcript(step.state, "pardon?")

    assert step.utterances == ["When was that?"]
    assert step.state.followup.retry_count == 0
    assert len(followups.contexts) == 1


@pytest.mark.asyncio
async def test_followup_context_carries_section_answers() -> None:
    script = QuestionScript.from_payload(
        [
            {"id": "G", "section": "Meds", "prompt": "Do you take medication?", "type": "yes_no"},
            {
                "id": "M",
                "section": "Meds",
                "prompt": "Which ones?",
                "type": "open",
                "followups": {"max": 1},
            },
        ]
    )
    followups = FakeFollowups()
    controller = _controller(script=script, followups=followups)
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "yes")

    step = await controller.handle_transcript(step.state, "metformin")

    assert step.done
    context = followups.contexts[0]
    assert context.section_answers == {"G": "YES", "M": "metformin"}
    assert context.primary_context == {"id": "G", "answer": "YES"}
    assert context.prior_answers == ["YES"]
    assert context.upcoming_questions == []


@pytest.mark.asyncio
async def test_run_session_to_completion() -> None:
    controller = _controller()
    speech = FakeSpeech(["yes", "10", "no", "nothing else"])

    final = await controller.run_session(controller.new_state("s1"), speech)

    assert final.is_terminal
    assert speech.spoken == [Q1, Q2, Q3, Q4]
    assert final.answer_map() == {"Q1": "YES", "Q2": "10", "Q3": "NO", "Q4": "nothing else"}


@pytest.mark.asyncio
async def test_run_session_can_be_abandoned() -> None:
    controller = _controller()
    speech = FakeSpeech(["yes"])

    final = await controller.run_session(
        controller.new_state("s1"),
        speech,
        should_stop=lambda: len(speech.spoken) >= 1,
    )

    assert final.abandoned
    assert speech.listens == 0
    assert final.answers == {}


@pytest.mark.asyncio
async def test_run_session_cancellation() -> None:
    class BlockingSpeech(FakeSpeech):
        async def listen(self) -> str | None:
            await asyncio.sleep(10)
            return "yes"

    controller = _controller()
    speech = BlockingSpeech([])
    task = asyncio.create_task(controller.run_session(controller.new_state("s1"), speech))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert speech.spoken == [Q1]


class StalledFollowups(FakeFollowups):
    async def generate_followup(self, context):
        self.contexts.append(context)
        await asyncio.sleep(5)
        return FollowupResult(ask="Too late?")


class BrokenOverlapFollowups(FakeFollowups):
    async def check_overlap(self, candidate, upcoming):
        self.overlap_calls.append((candidate, list(upcoming)))
        raise RuntimeError("overlap backend down")


class StalledOverlapFollowups(FakeFollowups):
    async def check_overlap(self, candidate, upcoming):
        await asyncio.sleep(5)
        return OverlapResult(allow=True)


async def _answer_heart_question_yes(controller: FlowController):
    step = controller.start(controller.new_state("s1"))
    step = await controller.handle_transcript(step.state, "no")
    return await controller.handle_transcript(step.state, "yes")


@pytest.mark.asyncio
async def test_stalled_followup_generation_resumes_script() -> None:
    followups = StalledFollowups()
    controller = _controller(followups=followups, call_timeout_seconds=0.01)

    step = await _answer_heart_question_yes(controller)

    assert len(followups.contexts) == 1
    assert not step.is_followup
    assert step.question_id == "Q4"
    assert step.utterances == [Q4]
    assert step.state.followup is None


@pytest.mark.asyncio
async def test_failing_overlap_check_drops_candidate() -> None:
    followups = BrokenOverlapFollowups(always_ask="Which heart condition was it?")
    controller = _controller(followups=followups)

    step = await _answer_heart_question_yes(controller)

    assert len(followups.overlap_calls) == 1
    assert len(followups.contexts) == 1
    assert step.question_id == "Q4"
    assert step.utterances == [Q4]
    assert "Which heart condition was it?" not in [entry.text for entry in step.state.transcript]


@pytest.mark.asyncio
async def test_stalled_overlap_check_drops_candidate() -> None:
    followups = StalledOverlapFollowups(always_ask="Which heart condition was it?")
    controller = _controller(followups=followups, call_timeout_seconds=0.01)

    step = await _answer_heart_question_yes(controller)

    assert not step.is_followup
    assert step.utterances == [Q4]


def test_section_answers_follow_recorded_sections() -> None:
    controller = _controller()
    state = controller.new_state("s1")
    state.record_answer("Q1", "NO", "no", "Lifestyle")
    state.record_answer("Q3", "YES", "yes", "Medical")
    state.record_answer("Q2", "10", "ten", "Lifestyle")

    assert state.section_answers("Lifestyle") == {"Q1": "NO", "Q2": "10"}
    assert list(state.section_answers("Lifestyle")) == ["Q1", "Q2"]
    assert state.section_answers("Closing") == {}

    state.record_answer("Q1", "YES", "yes", "Lifestyle")
    assert list(state.section_answers("Lifestyle")) == ["Q2", "Q1"]
