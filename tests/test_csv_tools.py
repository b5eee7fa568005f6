"""Tests for the CSV tool set and upload-time dataset preparation."""

from channel_chat.backend.tools.csv_tools import (
    ENGAGEMENT,
    build_slim_csv,
    compute_dataset_summary,
    enrich_with_engagement,
    execute_csv_tool,
    get_top_tweets,
)


def test_engagement_is_favorites_over_views():
    columns = ["Favorite Count", "View Count"]
    rows = [
        {"Favorite Count": "10", "View Count": "100"},
        {"Favorite Count": "5", "View Count": "0"},
        {"Favorite Count": "", "View Count": "50"},
        {"Favorite Count": "30", "View Count": "200"},
    ]
    enriched, cols = enrich_with_engagement(rows, columns)
    assert cols == ["Favorite Count", "View Count", ENGAGEMENT]
    assert [r[ENGAGEMENT] for r in enriched] == [0.1, None, None, 0.15]
    # input rows are left untouched
    assert ENGAGEMENT not in rows[0]


def test_engagement_enrichment_is_idempotent(tweet_rows):
    columns, rows = tweet_rows
    once_rows, once_cols = enrich_with_engagement(rows, columns)
    twice_rows, twice_cols = enrich_with_engagement(once_rows, once_cols)
    assert twice_cols == once_cols
    assert twice_rows == once_rows
    assert once_cols.count(ENGAGEMENT) == 1


def test_engagement_falls_back_to_likes_and_views():
    rows, cols = enrich_with_engagement([{"likes": "3", "views": "4"}], ["likes", "views"])
    assert cols[-1] == ENGAGEMENT
    assert rows[0][ENGAGEMENT] == 0.75


def test_engagement_needs_both_source_columns():
    rows = [{"Favorite Count": "3"}]
    out_rows, out_cols = enrich_with_engagement(rows, ["Favorite Count"])
    assert out_rows is rows
    assert out_cols == ["Favorite Count"]


def test_slim_csv_keeps_key_columns_in_header_order():
    columns = ["id", "text", "Language", "View Count", ENGAGEMENT, "Favorite Count"]
    rows = [{"id": "1", "text": 'said "hi", ok', "Language": "en", "View Count": "10",
             ENGAGEMENT: None, "Favorite Count": "2"}]
    slim = build_slim_csv(rows, columns).split("\n")
    assert slim[0] == "text,Language,View Count,engagement,Favorite Count"
    assert slim[1] == '"said ""hi"", ok",en,10,,2'


def test_slim_csv_empty_without_matching_columns():
    assert build_slim_csv([{"foo": "1"}], ["foo"]) == ""


def test_summary_describes_numeric_and_categorical_columns():
    rows = [
        {"views": "10", "lang": "en"},
        {"views": "20", "lang": "en"},
        {"views": "30", "lang": "fr"},
    ]
    summary = compute_dataset_summary(rows, ["views", "lang"])
    assert summary.startswith("**Dataset: 3 rows × 2 columns**\n")
    assert '  • "views": mean=20, min=10, max=30, n=3' in summary
    assert '  • "lang": 2 unique values — top: en (2), fr (1)' in summary
    assert summary.index("**Numeric columns**") < summary.index("**Categorical columns**")


def test_summary_mean_rounded_to_two_places():
    rows = [{"v": "1"}, {"v": "2"}, {"v": "2"}]
    assert '"v": mean=1.67, min=1, max=2, n=3' in compute_dataset_summary(rows, ["v"])


def test_summary_numeric_threshold_is_configurable():
    rows = [{"mixed": v} for v in ("1", "2", "x", "y", "3")]
    assert '"mixed": 5 unique values' in compute_dataset_summary(rows, ["mixed"])
    relaxed = compute_dataset_summary(rows, ["mixed"], numeric_threshold=0.5)
    assert '"mixed": mean=2, min=1, max=3, n=3' in relaxed


def test_top_tweets_descending_by_engagement(tweet_rows):
    rows, columns = enrich_with_engagement(tweet_rows[1], tweet_rows[0])
    out = get_top_tweets(rows, ENGAGEMENT, n=2)
    assert out["sort_column"] == ENGAGEMENT
    assert out["direction"] == "descending (highest first)"
    assert out["count"] == 2
    assert out["tweets"][0] == {
        "rank": 1,
        "text": "bravo",
        "Favorite Count": "50",
        "View Count": "100",
        ENGAGEMENT: 0.5,
    }
    assert out["tweets"][1]["text"] == "charlie"


def test_top_tweets_ascending_defaults_to_ten(tweet_rows):
    rows, _ = enrich_with_engagement(tweet_rows[1], tweet_rows[0])
    out = get_top_tweets(rows, "engagement", n=None, ascending=True)
    assert out["direction"] == "ascending (lowest first)"
    assert [t["text"] for t in out["tweets"]] == ["delta", "alpha", "charlie", "bravo"]
    assert [t["rank"] for t in out["tweets"]] == [1, 2, 3, 4]


def test_top_tweets_resolves_column_name(tweet_rows):
    columns, rows = tweet_rows
    out = get_top_tweets(rows, "favorite_count", n=1)
    assert out["sort_column"] == "Favorite Count"
    assert out["tweets"][0]["text"] == "bravo"


def test_top_tweets_non_numeric_column_keeps_file_order(tweet_rows):
    _, rows = tweet_rows
    out = get_top_tweets(rows, "Language")
    assert [t["text"] for t in out["tweets"]] == ["alpha", "bravo", "charlie", "delta"]


def test_top_tweets_truncates_text():
    rows = [{"text": "x" * 200, "views": "1"}]
    out = get_top_tweets(rows, "views")
    assert len(out["tweets"][0]["text"]) == 150


def test_top_tweets_without_rows_is_error():
    out = get_top_tweets([], "engagement")
    assert out["error"].startswith('No rows found. Column "engagement" may not exist.')


def test_execute_dispatches_by_name(tweet_rows):
    _, rows = tweet_rows
    stats = execute_csv_tool("compute_column_stats", {"column": "Favorite Count"}, rows)
    assert stats["max"] == 50
    counts = execute_csv_tool("get_value_counts", {"column": "Language", "top_n": 1}, rows)
    assert counts["value_counts"] == {"en": 2}
    top = execute_csv_tool("get_top_tweets", {"sort_column": "View Count", "n": 3}, rows)
    assert top["count"] == 3


def test_execute_reports_bad_arguments_and_unknown_tools(tweet_rows):
    _, rows = tweet_rows
    bad = execute_csv_tool("compute_column_stats", {}, rows)
    assert bad["error"].startswith("Invalid arguments for compute_column_stats")
    assert execute_csv_tool("drop_table", {}, rows) == {"error": "Unknown tool: drop_table"}
