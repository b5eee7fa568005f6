from typing import Any, Dict

import jsonschema
from channel_chat.backend.adapters.llm import CSV_TOOLS, YOUTUBE_TOOLS

TOOLS = CSV_TOOLS + YOUTUBE_TOOLS


def _walk_schema(schema: Dict[str, Any]):
    """Yield all nested schemas (DFS)."""
    yield schema
    if isinstance(schema, dict):
        for key in ("properties", "patternProperties"):
            if key in schema and isinstance(schema[key], dict):
                for sub in schema[key].values():
                    yield from _walk_schema(sub)
        if "items" in schema and isinstance(schema["items"], dict):
            yield from _walk_schema(schema["items"])


def test_tool_param_schemas_are_valid_jsonschema():
    for tool in TOOLS:
        params = tool["function"].get("parameters")
        assert params and isinstance(params, dict)
        # should be a valid JSON Schema Draft 7
        jsonschema.Draft7Validator.check_schema(params)


def test_required_params_are_declared():
    for tool in TOOLS:
        params = tool["function"]["parameters"]
        assert set(params.get("required", [])) <= set(params["properties"])


def test_every_param_has_type_and_description():
    for tool in TOOLS:
        for node in list(_walk_schema(tool["function"]["parameters"]))[1:]:
            assert node.get("type") in ("string", "number", "boolean")
            assert node.get("description")


def test_sample_arguments_validate():
    samples = {
        "compute_column_stats": {"column": "Favorite Count"},
        "get_value_counts": {"column": "Language", "top_n": 5},
        "get_top_tweets": {"sort_column": "engagement", "n": 10, "ascending": False},
        "generateImage": {"prompt": "a fox", "use_anchor": True},
        "plot_metric_vs_time": {"metric_field": "view_count"},
        "play_video": {"selector": "most viewed"},
        "compute_stats_json": {"field": "like_count"},
    }
    for tool in TOOLS:
        fn = tool["function"]
        jsonschema.Draft7Validator(fn["parameters"]).validate(samples[fn["name"]])
