import asyncio

import pytest

from fakes import FakeModelClient

from kalissh.modules.errors import BackendError, ModelTimeoutError, ValidationParseError
from kalissh.modules.llm import ModelRegistry, ModelResponse, ModelRole
from kalissh.modules.orchestrator import (
    DEGRADED_CONTENT,
    ExecutionMode,
    Orchestrator,
    ResultCache,
    parse_verdict,
    select_best_response,
)
from kalissh.modules.orchestrator.orchestrator import VALIDATION_INSTRUCTION

LLAMA = "meta-llama/llama-3-8b-instruct"
DEEPSEEK = "deepseek/deepseek-chat"
MISTRAL = "mistralai/mistral-7b-instruct"
QWEN = "qwen/qwen-2.5-14b-instruct"

MESSAGES = [
    {"role": "system", "content": "You are a security assistant."},
    {"role": "user", "content": "Which ports does a default nmap scan cover?"},
]


def response(model, role, content="answer", error=None):
    return ModelResponse(model=model, role=role, content=content, error=error)


class TestSelectBestResponse:
    def test_single_survivor(self):
        only = response(LLAMA, ModelRole.GENERAL)

        assert select_best_response([only]) is only

    def test_reasoning_beats_analysis_and_general(self):
        candidates = [
            response(LLAMA, ModelRole.GENERAL),
            response(MISTRAL, ModelRole.ANALYSIS),
            response(DEEPSEEK, ModelRole.REASONING),
        ]

        assert select_best_response(candidates).model == DEEPSEEK

    def test_unranked_roles_fall_back_to_first(self):
        candidates = [
            response("openai/gpt-3.5-turbo", ModelRole.CREATIVITY),
            response("google/gemma-7b-it", ModelRole.LOGIC),
        ]

        assert select_best_response(candidates).model == "openai/gpt-3.5-turbo"


class TestParseVerdict:
    def test_plain_json(self):
        verdict = parse_verdict('{"approved": true, "confidence": 0.9, "issues": "none"}')

        assert verdict.approved is True
        assert verdict.confidence == 0.9

    def test_fenced_json(self):
        verdict = parse_verdict('```json\n{"approved": false, "confidence": 0.2, "issues": ["unsafe"]}\n```')

        assert verdict.approved is False
        assert verdict.issues == ["unsafe"]

    @pytest.mark.parametrize(
        "text",
        [
            "Looks good to me!",
            '{"approved": true}',
            '{"approved": true, "confidence": "high"}',
            "",
        ],
    )
    def test_rejects_unstructured_output(self, text):
        with pytest.raises(ValidationParseError):
            parse_verdict(text)

    def test_percentage_confidence_kept_as_given(self):
        verdict = parse_verdict('{"approved": true, "confidence": 85}')

        assert verdict.confidence == 85


class TestOrchestratorSetup:
    def test_unknown_model_key(self, model_client, registry, cache):
        with pytest.raises(ValueError, match="not in the registry"):
            Orchestrator(model_client, registry, cache, consensus_models=("llama", "claude"))


class TestSmartConsensus:
    @pytest.mark.asyncio
    async def test_all_models_agree(self, orchestrator, model_client):
        model_client.replies.update({LLAMA: "llama says", DEEPSEEK: "deepseek says", MISTRAL: "mistral says"})

        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.content == "deepseek says"
        assert result.consensus is True
        assert set(result.models_used) == {LLAMA, DEEPSEEK, MISTRAL}
        assert result.metadata["total_responses"] == 3
        assert result.metadata["selected_model"] == DEEPSEEK
        assert result.metadata["consensus_score"] == 1.0
        assert result.error is None
        assert result.from_cache is False

    @pytest.mark.asyncio
    async def test_two_survivors_still_consensus(self, orchestrator, model_client):
        model_client.replies.update(
            {LLAMA: "llama says", DEEPSEEK: ModelTimeoutError("deepseek timed out"), MISTRAL: "mistral says"}
        )

        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.content == "mistral says"
        assert result.consensus is True
        assert DEEPSEEK not in result.models_used
        assert "timed out" in result.metadata["errors"][DEEPSEEK]

    @pytest.mark.asyncio
    async def test_single_survivor_no_consensus(self, orchestrator, model_client):
        model_client.replies.update(
            {LLAMA: "llama says", DEEPSEEK: BackendError("status 500"), MISTRAL: ""}
        )

        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.content == "llama says"
        assert result.consensus is False
        assert result.models_used == (LLAMA,)

    @pytest.mark.asyncio
    async def test_all_models_fail_degrades(self, orchestrator, model_client):
        model_client.replies.update(
            {LLAMA: BackendError("a"), DEEPSEEK: BackendError("b"), MISTRAL: RuntimeError("c")}
        )

        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.content == DEGRADED_CONTENT
        assert result.consensus is False
        assert result.models_used == ()
        assert result.error == "All models failed to respond"
        assert result.metadata["error"] is True

    @pytest.mark.asyncio
    async def test_degraded_result_not_cached(self, orchestrator, model_client, cache):
        await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert len(cache) == 0

        model_client.replies.update({LLAMA: "recovered"})
        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.content == "recovered"
        assert len(model_client.calls) == 6

    @pytest.mark.asyncio
    async def test_models_called_concurrently(self, orchestrator, model_client):
        arrived = []
        everyone_in = asyncio.Event()

        def barrier(name):
            async def reply(messages):
                arrived.append(name)
                if len(arrived) == 3:
                    everyone_in.set()
                # Deadlocks (and times out) if calls were made one after another
                await asyncio.wait_for(everyone_in.wait(), timeout=1)
                return f"{name} says"

            return reply

        model_client.replies.update({LLAMA: barrier("llama"), DEEPSEEK: barrier("deepseek"), MISTRAL: barrier("mistral")})

        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.consensus is True
        assert len(result.models_used) == 3

    @pytest.mark.asyncio
    async def test_temperature_forwarded(self, orchestrator, model_client):
        model_client.replies.update({LLAMA: "ok"})

        await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES, temperature=0.7)

        assert {temperature for _, _, temperature in model_client.calls} == {0.7}

    @pytest.mark.asyncio
    async def test_unknown_mode_uses_smart_consensus(self, orchestrator, model_client):
        model_client.replies.update({LLAMA: "llama says", MISTRAL: "mistral says"})

        result = await orchestrator.execute_mode("parallel", MESSAGES)

        assert result.mode == "smart_consensus"
        assert set(model_client.called_models()) == {LLAMA, DEEPSEEK, MISTRAL}


class TestCaching:
    @pytest.mark.asyncio
    async def test_repeat_request_served_from_cache(self, orchestrator, model_client):
        model_client.replies.update({LLAMA: "a", DEEPSEEK: "b", MISTRAL: "c"})

        first = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)
        second = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert len(model_client.calls) == 3
        assert second.content == first.content
        assert second.models_used == first.models_used
        assert second.from_cache is True
        assert second.metadata["from_cache"] is True
        # The stored result itself is not marked
        assert first.from_cache is False

    @pytest.mark.asyncio
    async def test_expired_entry_triggers_new_calls(self, orchestrator, model_client, clock):
        model_client.replies.update({LLAMA: "a", DEEPSEEK: "b", MISTRAL: "c"})

        await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)
        clock.advance(601)
        result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

        assert result.from_cache is False
        assert len(model_client.calls) == 6

    @pytest.mark.asyncio
    async def test_modes_cached_separately(self, orchestrator, model_client):
        model_client.replies.update(
            {
                LLAMA: "a",
                DEEPSEEK: "b",
                MISTRAL: "c",
                QWEN: '{"approved": true, "confidence": 0.8, "issues": ""}',
            }
        )

        await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)
        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.from_cache is False
        assert result.mode == "validated"


class TestValidated:
    @pytest.mark.asyncio
    async def test_confident_approval(self, orchestrator, model_client):
        model_client.replies.update(
            {DEEPSEEK: "Use nmap -sV.", QWEN: '{"approved": true, "confidence": 0.9, "issues": ""}'}
        )

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.content == "Use nmap -sV."
        assert result.consensus is True
        assert result.models_used == (DEEPSEEK, QWEN)
        assert result.metadata["approved"] is True
        assert result.metadata["confidence"] == 0.9

    @pytest.mark.asyncio
    async def test_validator_sees_primary_answer(self, orchestrator, model_client):
        model_client.replies.update(
            {DEEPSEEK: "Use nmap -sV.", QWEN: '{"approved": true, "confidence": 0.9}'}
        )

        await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES, temperature=0.5)

        (primary_model, _, primary_temp), (validator_model, validator_messages, validator_temp) = model_client.calls
        assert primary_model == DEEPSEEK
        assert primary_temp == 0.5
        assert validator_model == QWEN
        assert validator_temp == 0.1
        assert validator_messages[-2] == {"role": "assistant", "content": "Use nmap -sV."}
        assert validator_messages[-1] == {"role": "user", "content": VALIDATION_INSTRUCTION}

    @pytest.mark.parametrize(
        "verdict",
        [
            '{"approved": true, "confidence": 0.6}',
            '{"approved": false, "confidence": 0.95}',
        ],
    )
    @pytest.mark.asyncio
    async def test_no_consensus_without_confident_approval(self, orchestrator, model_client, verdict):
        model_client.replies.update({DEEPSEEK: "answer", QWEN: verdict})

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.consensus is False
        assert result.models_used == (DEEPSEEK, QWEN)

    @pytest.mark.asyncio
    async def test_percentage_confidence_counts_as_confident(self, orchestrator, model_client):
        model_client.replies.update({DEEPSEEK: "answer", QWEN: '{"approved": true, "confidence": 85}'})

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.consensus is True
        assert result.models_used == (DEEPSEEK, QWEN)
        assert result.metadata["confidence"] == 85

    @pytest.mark.asyncio
    async def test_unparseable_verdict(self, orchestrator, model_client):
        model_client.replies.update({DEEPSEEK: "answer", QWEN: "Seems fine to me."})

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.content == "answer"
        assert result.consensus is False
        assert result.models_used == (DEEPSEEK,)
        assert result.metadata["validation_failed"] is True
        assert result.error is None

    @pytest.mark.asyncio
    async def test_validator_failure(self, orchestrator, model_client):
        model_client.replies.update({DEEPSEEK: "answer", QWEN: ModelTimeoutError("qwen timed out")})

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.content == "answer"
        assert result.metadata["validation_failed"] is True
        assert "timed out" in result.metadata["validation_error"]

    @pytest.mark.asyncio
    async def test_primary_failure_degrades(self, orchestrator, model_client):
        model_client.replies.update({DEEPSEEK: BackendError("API request failed with status 503")})

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.content == DEGRADED_CONTENT
        assert result.mode == "validated"
        assert result.error == "API request failed with status 503"
        assert QWEN not in model_client.called_models()

    @pytest.mark.asyncio
    async def test_unexpected_error_degrades(self, orchestrator, model_client):
        model_client.replies.update({DEEPSEEK: RuntimeError("boom")})

        result = await orchestrator.execute_mode(ExecutionMode.VALIDATED, MESSAGES)

        assert result.content == DEGRADED_CONTENT
        assert result.error == "boom"


@pytest.mark.asyncio
async def test_custom_panel(model_client):
    orchestrator = Orchestrator(
        model_client,
        ModelRegistry(),
        ResultCache(),
        consensus_models=("gpt", "gemma"),
    )
    model_client.replies.update({"openai/gpt-3.5-turbo": "gpt says", "google/gemma-7b-it": "gemma says"})

    result = await orchestrator.execute_mode(ExecutionMode.SMART_CONSENSUS, MESSAGES)

    assert set(result.models_used) == {"openai/gpt-3.5-turbo", "google/gemma-7b-it"}
    assert result.content == "gpt says"
