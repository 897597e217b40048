import json

import pytest

from text2rule.errors import ConfigurationError
from text2rule.gates.refiner import PromptRefiner
from text2rule.prompts import PromptRegistry


@pytest.fixture
def refiner_for(prompts, oracle_for):
    def factory(adapter):
        return PromptRefiner(oracle_for(adapter), prompts)

    return factory


def test_returns_refined_prompt(scripted, refiner_for):
    adapter = scripted({"prompt_refinement": ["```\n# task: decomposition\nBetter instruction\n```"]})
    refined = refiner_for(adapter).refine("old", "statement", "prev", "Score 0.2", 1)
    assert refined == "# task: decomposition\nBetter instruction"


def test_meta_prompt_embeds_all_inputs(scripted, refiner_for):
    adapter = scripted({"prompt_refinement": ["new"]})
    refiner_for(adapter).refine("old prompt", "the statement", "last output", "too low", 2)
    (prompt,) = adapter.prompts_for("prompt_refinement")
    payload = json.loads(prompt.rpartition("INPUT:\n")[2])
    assert payload == {
        "original_prompt": "old prompt",
        "input_text": "the statement",
        "previous_output": "last output",
        "feedback": "too low",
        "attempt": 2,
    }


@pytest.mark.parametrize("answer", ["", "   ", "```\n```", ConnectionError("boom"), RuntimeError("x")])
def test_falls_back_to_original(scripted, refiner_for, answer):
    adapter = scripted({"prompt_refinement": [answer]})
    assert refiner_for(adapter).refine("original", "s", None, None, 1) == "original"


def test_missing_template_keeps_original(scripted, oracle_for, tmp_path):
    refiner = PromptRefiner(oracle_for(scripted()), PromptRegistry(tmp_path))
    assert refiner.refine("original", "s", None, None, 1) == "original"
    with pytest.raises(ConfigurationError):
        PromptRegistry(tmp_path).get("prompt_refinement")


def test_fenced_example_inside_prose_is_kept(scripted, refiner_for):
    answer = (
        "# task: condition_extraction\n"
        "Split the statement into rules. Answer like this:\n"
        "```json\n"
        '[{"rule": "If X then Y"}]\n'
        "```\n"
        "Never drop a condition."
    )
    adapter = scripted({"prompt_refinement": [answer]})
    refined = refiner_for(adapter).refine("old", "statement", "prev", "Score 0.2", 1)
    assert refined.startswith("# task: condition_extraction")
    assert '[{"rule": "If X then Y"}]' in refined
    assert refined.endswith("Never drop a condition.")


def test_two_fenced_blocks_are_not_merged(scripted, refiner_for):
    answer = "```\n# task: x\nFirst\n```\nthen\n```\nSecond\n```"
    adapter = scripted({"prompt_refinement": [answer]})
    assert refiner_for(adapter).refine("old", "s", None, None, 1) == answer
