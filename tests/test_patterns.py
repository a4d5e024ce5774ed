from app.services.pattern_service import (
    EMERGENCY_PATTERNS,
    INTENT_PATTERNS,
    SPECIAL_EVENT_PATTERNS,
    build_pattern_set,
    load_pattern_set,
)


class TestLoadPatternSet:
    def test_intent_table_is_versioned_and_ordered(self):
        patterns = load_pattern_set(INTENT_PATTERNS)
        assert patterns.version >= 1
        categories = list(patterns.categories)
        assert categories[0] == "PAIN_URGENT"
        assert categories.index("HUMAN_REQUEST") < categories.index("PRICE_INQUIRY")
        assert categories[-1] == "GREETING"

    def test_emergency_table_has_vertical_tiers(self):
        patterns = load_pattern_set(EMERGENCY_PATTERNS)
        for tier in ("dental.critical", "dental.severe", "dental.moderate", "medical.critical", "accident"):
            assert patterns.get(tier), tier

    def test_with_prefix_strips_prefix_in_table_order(self):
        patterns = load_pattern_set(SPECIAL_EVENT_PATTERNS)
        event_types = [name for name, _ in patterns.with_prefix("event")]
        assert event_types[:2] == ["birthday", "anniversary"]
        assert "vip" in event_types

    def test_missing_table_is_empty(self):
        patterns = load_pattern_set("does_not_exist")
        assert patterns.categories == {}
        assert patterns.version == 0


class TestBuildPatternSet:
    def test_invalid_pattern_is_skipped(self):
        patterns = build_pattern_set("test", {"GREETING": ["hola", "([unclosed"]})
        assert len(patterns.get("GREETING")) == 1
        assert patterns.matches("GREETING", "HOLA que tal")

    def test_first_match_returns_match_object(self):
        patterns = build_pattern_set("test", {"size": [r"(\d+) personas"]})
        match = patterns.first_match("size", "somos 12 personas")
        assert match.group(1) == "12"

    def test_unknown_category_matches_nothing(self):
        patterns = build_pattern_set("test", {})
        assert patterns.first_match("anything", "text") is None
