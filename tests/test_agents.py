"""Tests for the stage agents and their shared model-call plumbing."""

from __future__ import annotations

import json
from dataclasses import replace

import pytest

from conftest import ScriptedProvider
from specpilot.agents import (
    asker,
    diagram_designer,
    extractor,
    mvp_boundary,
    planner,
    risk_analyst,
    spec_generator,
    tech_advisor,
)
from specpilot.agents.schemas import AskerOutput, PlannerOutput, TechStackOutput
from specpilot.cache.response_cache import ResponseCache
from specpilot.config import CacheConfig
from specpilot.events.types import CACHE_HIT, MODEL_INVOCATION, STRUCTURED_OUTPUT_REPAIRED
from specpilot.exceptions import SchemaValidationError
from specpilot.models.base import ConversationMessage
from specpilot.workflow.state import Option, SessionState, Stage

RISKS = {
    "risks": [{"category": "scope", "description": "Too many features", "severity": "high"}],
    "solutions": [
        {"id": "lean", "name": "Lean", "description": "Ship the core", "approach": "conservative"},
        {"id": "balanced", "name": "Balanced", "description": "Core plus sync",
         "approach": "balanced"},
    ],
    "recommendedSolution": "lean",
    "reasoning": "Small team.",
}

TECH = {
    "recommendedCategory": "web",
    "reasoning": "Browser first.",
    "options": [
        {
            "id": "spa",
            "label": "React + FastAPI",
            "stack": {"frontend": "React", "backend": "FastAPI", "deployment": "Fly.io"},
            "recommended": True,
        },
        {
            "id": "static",
            "label": "Static site",
            "stack": {"frontend": "Astro", "deployment": "Netlify"},
        },
    ],
}


def _state(**kwargs) -> SessionState:
    return SessionState(session_id="s1", **kwargs)


def _with_user(state: SessionState, text: str) -> SessionState:
    state.user_input = text
    state.messages.append(ConversationMessage(role="user", content=text))
    return state


class TestRuleExtract:
    def test_goal_audience_and_flags(self):
        found = extractor.rule_extract(
            "I want to build a shared planner for students, with login", {},
        )
        assert found["product_goal"].startswith("I want to build")
        assert found["target_users"] == "students and learners"
        assert found["needs_auth"] is True
        assert found["needs_multi_user"] is True

    def test_negations_win_over_positive_patterns(self):
        found = extractor.rule_extract("single-user tool, no login, no database", {})
        assert found["needs_auth"] is False
        assert found["needs_multi_user"] is False
        assert found["needs_data_storage"] is False

    def test_never_overrides_known_fields(self):
        profile = {"product_goal": "x", "target_users": "teams", "needs_auth": False}
        found = extractor.rule_extract("I want to build it for developers with login", profile)
        assert "product_goal" not in found
        assert "target_users" not in found
        assert "needs_auth" not in found

    def test_blank_input(self):
        assert extractor.rule_extract("   ", {}) == {}


class TestRecordSelection:
    def test_risk_selection_by_name(self):
        state = _state(
            current_stage=Stage.RISK_ANALYSIS,
            summary={Stage.RISK_ANALYSIS: {"solutions": RISKS["solutions"], "risks": []}},
            user_input="Balanced",
        )
        updates = extractor.record_selection(state)
        assert updates["summary"][Stage.RISK_ANALYSIS]["selected_approach"] == "balanced"
        assert updates["profile"]["selected_risks"]["approach"] == "balanced"

    def test_tech_selection_from_json_value(self):
        stack = {"frontend": "React", "deployment": "Fly.io"}
        state = _state(
            current_stage=Stage.TECH_STACK,
            summary={Stage.TECH_STACK: {"options": []}},
            user_input=json.dumps(stack),
        )
        updates = extractor.record_selection(state)
        assert updates["profile"]["selected_tech_stack"] == stack

    def test_tech_selection_by_option_id(self):
        options = TechStackOutput.model_validate(TECH).model_dump()["options"]
        state = _state(
            current_stage=Stage.TECH_STACK,
            summary={Stage.TECH_STACK: {"options": options}},
            user_input="static",
        )
        updates = extractor.record_selection(state)
        assert updates["summary"][Stage.TECH_STACK]["tech_stack"]["frontend"] == "Astro"

    @pytest.mark.parametrize("typed", ["React + FastAPI (recommended)", "react + fastapi"])
    def test_tech_selection_by_displayed_label(self, typed):
        options = TechStackOutput.model_validate(TECH).model_dump()["options"]
        state = _state(
            current_stage=Stage.TECH_STACK,
            summary={Stage.TECH_STACK: {"options": options}},
            user_input=typed,
        )
        stack = extractor.record_selection(state)["profile"]["selected_tech_stack"]
        assert stack["frontend"] == "React"
        assert stack["backend"] == "FastAPI"

    def test_risk_selection_by_displayed_label(self):
        state = _state(
            current_stage=Stage.RISK_ANALYSIS,
            summary={Stage.RISK_ANALYSIS: {"solutions": RISKS["solutions"], "risks": []}},
            user_input="Lean (recommended)",
        )
        updates = extractor.record_selection(state)
        assert updates["profile"]["selected_risks"]["approach"] == "lean"

    def test_free_text_tech_choice_kept(self):
        state = _state(
            current_stage=Stage.TECH_STACK,
            summary={Stage.TECH_STACK: {"options": []}},
            user_input="Django please",
        )
        assert extractor.record_selection(state)["profile"]["selected_tech_stack"] == {
            "choice": "Django please",
        }

    def test_mvp_confirmation(self):
        state = _state(
            current_stage=Stage.MVP_BOUNDARY,
            summary={Stage.MVP_BOUNDARY: {"mvp_features": ["log habits"]}},
            user_input="confirm",
        )
        updates = extractor.record_selection(state)
        assert updates["profile"]["mvp_boundary"] == {
            "features": ["log habits"], "confirmation": "confirm",
        }

    def test_other_stages_record_feedback(self):
        state = _state(
            current_stage=Stage.DIAGRAM_DESIGN,
            summary={Stage.DIAGRAM_DESIGN: {}},
            user_input="looks right",
        )
        assert extractor.record_selection(state)["summary"][Stage.DIAGRAM_DESIGN] == {
            "feedback": "looks right",
        }


class TestExtractorRun:
    async def test_model_wins_over_rules_and_profile(self, make_ctx):
        provider = ScriptedProvider([{
            "extracted": {"targetUsers": "teachers", "coreFunctions": ["grade", "share"]},
            "missingFields": ["needs_data_storage"],
            "nextQuestion": "Do you need to save data?",
        }])
        state = _with_user(
            _state(current_stage=Stage.REQUIREMENT_COLLECTION, profile={"target_users": "old"}),
            "I want to build a grading tool with login",
        )
        updates = await extractor.run(state, make_ctx(provider))

        profile = updates["profile"]
        assert profile["target_users"] == "teachers"
        assert profile["core_functions"] == ["grade", "share"]
        assert profile["needs_auth"] is True
        assert profile["product_goal"].startswith("I want to build")
        assert updates["next_question"] == "Do you need to save data?"
        assert "needs_data_storage" in updates["missing_fields"]
        assert "target_users" not in updates["missing_fields"]

    async def test_history_excludes_current_message(self, make_ctx):
        provider = ScriptedProvider([{"extracted": {}}])
        state = _state(current_stage=Stage.REQUIREMENT_COLLECTION)
        for i in range(7):
            state.messages.append(ConversationMessage(role="user", content=f"old {i}"))
        _with_user(state, "newest")
        await extractor.run(state, make_ctx(provider))

        sent = provider.calls[0]
        contents = [m["content"] for m in sent]
        assert "old 1" not in contents
        assert "old 2" in contents
        assert "newest" not in contents
        assert "New user input: newest" in sent[-1]["content"]

    async def test_later_stage_skips_model(self, make_ctx):
        provider = ScriptedProvider()
        state = _state(
            current_stage=Stage.MVP_BOUNDARY,
            summary={Stage.MVP_BOUNDARY: {"mvp_features": []}},
            user_input="confirm",
        )
        await extractor.run(state, make_ctx(provider))
        assert provider.calls == []


class TestPlanner:
    async def test_checklist_overrides_model(self, make_ctx):
        provider = ScriptedProvider([{"completeness": 150, "canProceed": True, "recommendation": "go"}])
        state = _state(profile={"product_goal": "x"})
        updates = await planner.run(state, make_ctx(provider))
        assert updates["completeness"] == 100
        assert updates["need_more_info"] is True
        assert updates["metadata"] == {"planner_recommendation": "go"}
        assert "target_users" in updates["missing_fields"]

    async def test_missing_completeness_uses_checklist_score(self, make_ctx):
        provider = ScriptedProvider([{"canProceed": False}])
        state = _state(profile={"product_goal": "x", "target_users": "y"})
        updates = await planner.run(state, make_ctx(provider))
        assert updates["completeness"] == 33

    async def test_full_checklist_proceeds(self, make_ctx):
        provider = ScriptedProvider([{"completeness": 90, "canProceed": False}])
        profile = {
            "product_goal": "x", "target_users": "y", "core_functions": ["a"],
            "needs_data_storage": True, "needs_multi_user": False, "needs_auth": False,
        }
        updates = await planner.run(_state(profile=profile), make_ctx(provider))
        assert updates["need_more_info"] is False
        assert updates["missing_fields"] == []

    @pytest.mark.parametrize("raw, expected", [(-5, 0), (42, 42), (101, 100), (None, None)])
    def test_completeness_clamp(self, raw, expected):
        assert PlannerOutput(completeness=raw).completeness == expected


class TestQuestionAndStageAgents:
    async def test_asker(self, make_ctx):
        provider = ScriptedProvider([{
            "question": "Who will use it?",
            "options": [{"id": "a", "label": "Students", "value": "students"}],
        }])
        updates = await asker.run(_state(missing_fields=["target_users"]), make_ctx(provider))
        assert updates["response"] == "Who will use it?"
        assert updates["asked_questions"] == ["Who will use it?"]
        assert updates["options"] == [Option(id="a", label="Students", value="students")]
        assert updates["need_more_info"] is True

    async def test_risk_analyst(self, make_ctx):
        provider = ScriptedProvider([RISKS])
        updates = await risk_analyst.run(_state(), make_ctx(provider))
        assert updates["current_stage"] is Stage.RISK_ANALYSIS
        summary = updates["summary"][Stage.RISK_ANALYSIS]
        assert summary["recommended_solution"] == "lean"
        assert [o.value for o in updates["options"]] == ["lean", "balanced"]
        assert "Lean (recommended)" in updates["response"]
        assert "[high] scope" in updates["response"]

    async def test_tech_advisor(self, make_ctx):
        provider = ScriptedProvider([TECH])
        updates = await tech_advisor.run(_state(), make_ctx(provider))
        assert updates["current_stage"] is Stage.TECH_STACK
        first, second = updates["options"]
        assert first.label == "React + FastAPI (recommended)"
        assert json.loads(first.value) == {
            "frontend": "React", "backend": "FastAPI", "deployment": "Fly.io",
        }
        assert json.loads(second.value) == {"frontend": "Astro", "deployment": "Netlify"}
        assert updates["response"].startswith("Recommended category: web")

    async def test_mvp_boundary(self, make_ctx):
        provider = ScriptedProvider([{
            "mvpFeatures": ["log habits", "streaks"],
            "futureFeatures": ["social"],
            "devPlan": {"phase1": ["core"], "phase2": ["social"], "estimatedComplexity": "low"},
        }])
        updates = await mvp_boundary.run(_state(), make_ctx(provider))
        assert updates["profile"] == {"non_goals": ["social"]}
        assert updates["summary"][Stage.MVP_BOUNDARY]["dev_plan"]["estimated_complexity"] == "low"
        assert "1. log habits" in updates["response"]
        assert "Phase 2: social" in updates["response"]
        assert [o.id for o in updates["options"]] == ["confirm", "adjust"]

    async def test_mvp_boundary_requires_features(self, make_ctx):
        provider = ScriptedProvider([{"mvpFeatures": []}, {"mvpFeatures": []}])
        with pytest.raises(SchemaValidationError):
            await mvp_boundary.run(_state(), make_ctx(provider))
        assert len(provider.calls) == 2

    async def test_diagram_designer(self, make_ctx):
        provider = ScriptedProvider([{
            "systemArchitecture": "graph TD; A-->B",
            "explanation": "Two tiers.",
        }])
        updates = await diagram_designer.run(_state(), make_ctx(provider))
        assert "```mermaid\ngraph TD; A-->B\n```" in updates["response"]
        assert updates["response"].endswith("Two tiers.")
        assert updates["summary"][Stage.DIAGRAM_DESIGN]["system_architecture"] == "graph TD; A-->B"

    async def test_diagram_designer_without_diagrams(self, make_ctx):
        provider = ScriptedProvider([{}])
        updates = await diagram_designer.run(_state(), make_ctx(provider))
        assert updates["response"] == "Diagrams are ready."

    async def test_spec_generator(self, make_ctx):
        provider = ScriptedProvider(["  # Habit Tracker\n\nFull spec.  "])
        state = _state(summary={Stage.TECH_STACK: {"tech_stack": {"frontend": "React"}}})
        updates = await spec_generator.run(state, make_ctx(provider))
        assert updates["final_spec"] == "# Habit Tracker\n\nFull spec."
        assert updates["current_stage"] is Stage.COMPLETED
        assert updates["stop"] is True
        assert '"tech_stack"' in provider.calls[0][-1]["content"]


class TestAgentContext:
    async def test_repair_emits_event_and_charges_tokens(self, make_ctx, event_bus):
        provider = ScriptedProvider(["I think it is fine", {"question": "Who?"}])
        state = _state()
        result = await make_ctx(provider).call_structured(
            "asker", "Ask.", "profile", AskerOutput, state=state,
        )
        assert result.question == "Who?"
        assert len(provider.calls) == 2
        assert provider.calls[1][-2] == {"role": "assistant", "content": "I think it is fine"}
        assert state.metadata["total_tokens"] == 30
        assert len(event_bus.recent_events(event_type=MODEL_INVOCATION)) == 2
        repaired = event_bus.recent_events(event_type=STRUCTURED_OUTPUT_REPAIRED)
        assert repaired[0].data["calls"] == 2

    async def test_system_prompt_leads_messages(self, make_ctx):
        provider = ScriptedProvider(["text"])
        await make_ctx(provider).call_text("spec_generator", "You write specs.", "material")
        sent = provider.calls[0]
        assert sent[0] == {"role": "system", "content": "You write specs."}
        assert sent[-1] == {"role": "user", "content": "material"}

    async def test_cache_reuses_successful_reply(self, make_ctx, config, event_bus):
        cached_config = replace(config, cache=CacheConfig(enabled=True))
        cache = ResponseCache()
        provider = ScriptedProvider([{"question": "Who?"}])
        ctx = make_ctx(provider, config=cached_config, cache=cache)

        first = await ctx.call_structured("asker", "Ask.", "same", AskerOutput)
        second = await ctx.call_structured("asker", "Ask.", "same", AskerOutput)
        assert first == second
        assert len(provider.calls) == 1
        assert len(event_bus.recent_events(event_type=CACHE_HIT)) == 1
        assert cache.stats()["hits"] == 1

    async def test_disabled_cache_always_calls(self, make_ctx):
        provider = ScriptedProvider(["a", "b"])
        ctx = make_ctx(provider)
        assert await ctx.call_text("x", "sys", "same") == "a"
        assert await ctx.call_text("x", "sys", "same") == "b"
