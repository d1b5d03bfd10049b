from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol, Sequence

from agents.fallback_validator import fallback_validation, generic_explanation
from agents.followup import OVERLAP_UPCOMING_WINDOW, PRIOR_ANSWERS_WINDOW
from models.question import QuestionDef
from models.results import FollowupContext, FollowupResult, OverlapResult, ValidationResult
from models.session import NO_VALID_RESPONSE, FlowState, FlowStep, FollowupProgress, QAPair
from services.question_script import QuestionScript


logger = logging.getLogger(__name__)

GIVE_UP_PHRASE = "Let's move on."
ESCALATION_SUFFIXES = {2: "Let's try once more."}


class Validator(Protocol):
    async def validate(
        self,
        question: str,
        question_type: str,
        transcript: str | None,
        choices: Sequence[str] | None = None,
    ) -> ValidationResult: ...


class FollowupGenerator(Protocol):
    @property
    def is_configured(self) -> bool: ...

    async def generate_followup(self, context: FollowupContext) -> FollowupResult: ...

    async def check_overlap(self, candidate: str, upcoming: Sequence[str]) -> OverlapResult: ...


class SpeechChannel(Protocol):
    """Speech I/O owned by the caller. ``listen`` returns None when capture failed."""

    async def speak(self, text: str) -> None: ...

    async def listen(self) -> str | None: ...


class FlowTransitionError(RuntimeError):
    pass


def escalation_suffix(retry_count: int) -> str | None:
    return ESCALATION_SUFFIXES.get(retry_count)


class FlowController:
    """Deterministic questionnaire state machine.

    Question order, branching and the number of retries and follow-ups are
    decided here and nowhere else; validators and follow-up generators only
    interpret answers. Each transition takes a FlowState and returns a FlowStep
    holding a new state, so the caller's state is never mutated.
    """

    def __init__(
        self,
        script: QuestionScript,
        validator: Validator,
        followups: FollowupGenerator,
        retry_limit: int = 3,
        call_timeout_seconds: float | None = 25.0,
    ) -> None:
        self.script = script
        self.validator = validator
        self.followups = followups
        self.retry_limit = max(1, retry_limit)
        self.call_timeout_seconds = call_timeout_seconds

    def new_state(self, session_id: str, language: str = "en-US") -> FlowState:
        return FlowState(
            session_id=session_id,
            current_index=self.script.find_next(0, {}),
            followups_enabled=self.followups.is_configured,
            language=language,
        )

    def start(self, state: FlowState) -> FlowStep:
        if state.phase != "idle":
            raise FlowTransitionError(f"Session already started (phase={state.phase})")
        state = state.model_copy(deep=True)
        spoken: list[str] = []
        if state.current_index is None:
            return self._terminate(state, spoken)
        return self._ask_current(state, spoken)

    async def handle_transcript(self, state: FlowState, transcript: str | None) -> FlowStep:
        if state.phase == "listening":
            return await self._on_scripted_answer(state.model_copy(deep=True), transcript or "")
        if state.phase == "followup_listening":
            return await self._on_followup_answer(state.model_copy(deep=True), transcript or "")
        raise FlowTransitionError(f"Not waiting for an answer (phase={state.phase})")

    async def run_session(
        self,
        state: FlowState,
        speech: SpeechChannel,
        should_stop: Callable[[], bool] | None = None,
    ) -> FlowState:
        """Drive a whole session against a speech channel.

        Each await is a suspension point; cancelling the task or returning True
        from ``should_stop`` abandons the session and the pending result is
        dropped.
        """
        stop = should_stop or (lambda: False)
        step = self.start(state)
        while True:
            for text in step.utterances:
                await speech.speak(text)
                if stop():
                    return self._abandoned(step.state)
            if not step.awaiting_input:
                return step.state
            transcript = await speech.listen()
            if stop():
                return self._abandoned(step.state)
            next_step = await self.handle_transcript(step.state, transcript)
            if stop():
                return self._abandoned(step.state)
            step = next_step

    # scripted questions

    def _current(self, state: FlowState) -> QuestionDef:
        if state.current_index is None:
            raise FlowTransitionError("No current question")
        return self.script[state.current_index]

    def _emit(self, state: FlowState, spoken: list[str], text: str) -> None:
        spoken.append(text)
        state.say(text)

    def _ask_current(self, state: FlowState, spoken: list[str]) -> FlowStep:
        question = self._current(state)
        state.phase = "speaking"
        self._emit(state, spoken, question.prompt)
        state.phase = "listening"
        logger.debug("[%s] asking %s", state.session_id, question.id)
        return FlowStep(state=state, utterances=spoken, question_id=question.id)

    async def _on_scripted_answer(self, state: FlowState, transcript: str) -> FlowStep:
        question = self._current(state)
        index = state.current_index
        spoken: list[str] = []
        if transcript.strip():
            state.heard(transcript)

        state.phase = "validating"
        result = await self._validate(question.prompt, question.type, transcript, question.choices)

        if result.repeat:
            logger.debug("[%s] repeat requested for %s", state.session_id, question.id)
            return self._ask_current(state, spoken)

        if result.valid:
            normalized = result.normalized or ""
            state.record_answer(question.id, normalized, transcript, question.section)
            state.retry_count = 0
            answers = state.answer_map()
            if question.on_no and normalized == "NO":
                next_index = self.script.resolve_skip(question.on_no, index, answers)
            else:
                next_index = self.script.find_next(index + 1, answers)
            state.phase = "advancing"

            config = question.followups
            if config is not None and config.max > 0 and state.followups_enabled:
                state.followup_count = 0
                state.followup = FollowupProgress(
                    parent_id=question.id,
                    resume_index=next_index,
                    last_answer=normalized,
                )
                return await self._continue_followups(state, spoken)
            return self._advance(state, next_index, spoken)

        state.retry_count += 1
        if state.retry_count < self.retry_limit:
            state.phase = "retry"
            message = result.explanation or generic_explanation(question.type, question.choices)
            suffix = escalation_suffix(state.retry_count)
            self._emit(state, spoken, f"{message} {suffix}" if suffix else message)
            return self._ask_current(state, spoken)

        logger.info(
            "[%s] no valid answer for %s after %d attempts",
            state.session_id,
            question.id,
            state.retry_count,
        )
        state.phase = "advancing"
        self._emit(state, spoken, GIVE_UP_PHRASE)
        state.record_answer(question.id, NO_VALID_RESPONSE, transcript, question.section)
        # onNo is bypassed: no real answer was obtained
        return self._advance(state, self.script.find_next(index + 1, state.answer_map()), spoken)

    def _advance(self, state: FlowState, next_index: int | None, spoken: list[str]) -> FlowStep:
        state.retry_count = 0
        state.followup_count = 0
        state.followup = None
        state.current_index = next_index
        if next_index is None:
            return self._terminate(state, spoken)
        return self._ask_current(state, spoken)

    def _terminate(self, state: FlowState, spoken: list[str]) -> FlowStep:
        state.phase = "terminal"
        state.current_index = None
        logger.info("[%s] questionnaire complete, %d answers", state.session_id, len(state.answers))
        return FlowStep(state=state, utterances=spoken)

    def _abandoned(self, state: FlowState) -> FlowState:
        state = state.model_copy(deep=True)
        state.abandoned = True
        return state

    # follow-up sub-loop

    async def _continue_followups(self, state: FlowState, spoken: list[str]) -> FlowStep:
        progress = state.followup
        parent = self.script[self.script.index_of(progress.parent_id)]
        config = parent.followups

        state.phase = "followup_check"
        if state.followup_count >= config.max:
            return self._advance(state, progress.resume_index, spoken)

        upcoming = self.script.upcoming(
            progress.resume_index, state.answer_map(), OVERLAP_UPCOMING_WINDOW
        )
        generated = await self._generate(self._followup_context(state, parent, upcoming))
        if generated.done or not generated.ask:
            return self._advance(state, progress.resume_index, spoken)

        overlap = await self._check_overlap(generated.ask, upcoming)
        if not overlap.allow:
            logger.info("[%s] follow-up overlaps the script, stopping follow-ups", state.session_id)
            return self._advance(state, progress.resume_index, spoken)

        progress.candidate = generated.ask
        progress.retry_count = 0
        progress.asked.append(generated.ask)
        return self._ask_followup(state, spoken)

    def _ask_followup(self, state: FlowState, spoken: list[str]) -> FlowStep:
        progress = state.followup
        state.phase = "followup_speaking"
        self._emit(state, spoken, progress.candidate)
        state.phase = "followup_listening"
        return FlowStep(state=state, utterances=spoken, question_id=progress.parent_id, is_followup=True)

    async def _on_followup_answer(self, state: FlowState, transcript: str) -> FlowStep:
        progress = state.followup
        parent = self.script[self.script.index_of(progress.parent_id)]
        config = parent.followups
        spoken: list[str] = []
        if transcript.strip():
            state.heard(transcript)

        state.phase = "followup_validating"
        result = await self._validate(progress.candidate, "open", transcript, None)

        if result.repeat:
            return self._ask_followup(state, spoken)

        if result.valid:
            answer = result.normalized or ""
            state.section_pairs.setdefault(parent.section, []).append(
                QAPair(q=progress.candidate, a=answer)
            )
            progress.last_answer = answer
            progress.candidate = None
            state.followup_count += 1
            return await self._continue_followups(state, spoken)

        progress.retry_count += 1
        if progress.retry_count < config.retry_limit:
            message = result.explanation or generic_explanation("open")
            suffix = escalation_suffix(progress.retry_count)
            self._emit(state, spoken, f"{message} {suffix}" if suffix else message)
            return self._ask_followup(state, spoken)

        self._emit(state, spoken, GIVE_UP_PHRASE)
        progress.candidate = None
        if config.stop_on_no_response:
            return self._advance(state, progress.resume_index, spoken)
        state.followup_count += 1
        return await self._continue_followups(state, spoken)

    def _followup_context(
        self,
        state: FlowState,
        parent: QuestionDef,
        upcoming: list[str],
    ) -> FollowupContext:
        progress = state.followup
        config = parent.followups
        section_answers = state.section_answers(parent.section)
        primary_context = next(
            (
                {"id": question_id, "answer": answer}
                for question_id, answer in section_answers.items()
                if question_id != parent.id
            ),
            None,
        )

        return FollowupContext(
            section=parent.section,
            question_text=parent.prompt,
            last_answer=progress.last_answer,
            prior_answers=state.prior_answers(PRIOR_ANSWERS_WINDOW, exclude=parent.id),
            topic=config.topic,
            guidance=config.guidance,
            previous_followups=list(progress.asked),
            upcoming_questions=upcoming,
            section_answers=section_answers,
            recent_qa_pairs=[pair.model_dump() for pair in state.section_pairs.get(parent.section, [])],
            primary_context=primary_context,
        )

    # bounded backend calls

    async def _bounded(self, awaitable):
        if self.call_timeout_seconds is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.call_timeout_seconds)

    async def _validate(
        self,
        question: str,
        question_type: str,
        transcript: str,
        choices: Sequence[str] | None,
    ) -> ValidationResult:
        try:
            result = await self._bounded(
                self.validator.validate(question, question_type, transcript, choices)
            )
        except asyncio.TimeoutError:
            logger.warning("Validation timed out, using rule-based fallback")
            return fallback_validation(question_type, transcript, choices)
        except Exception as err:
            logger.warning("Validation failed, using rule-based fallback: %s", err)
            return fallback_validation(question_type, transcript, choices)

        if result.valid and not (result.normalized or "").strip():
            return ValidationResult.invalid(result.explanation)
        return result

    async def _generate(self, context: FollowupContext) -> FollowupResult:
        try:
            return await self._bounded(self.followups.generate_followup(context))
        except asyncio.TimeoutError:
            logger.warning("Follow-up generation timed out")
        except Exception as err:
            logger.warning("Follow-up generation failed: %s", err)
        return FollowupResult.finished()

    async def _check_overlap(self, candidate: str, upcoming: list[str]) -> OverlapResult:
        try:
            return await self._bounded(self.followups.check_overlap(candidate, upcoming))
        except asyncio.TimeoutError:
            logger.warning("Overlap check timed out")
        except Exception as err:
            logger.warning("Overlap check failed: %s", err)
        return OverlapResult(allow=False)
