"""Tests for silicon_talk.context (name extraction, topic merging)."""

import pytest

from silicon_talk.context import extract_name, merge_topics

# ========================================================================
# extract_name
# ========================================================================


class TestExtractName:
    def test_hiragana_self_introduction(self):
        assert extract_name("わたしはたろうです") == "たろう"

    def test_kanji_name_after_name_marker(self):
        assert extract_name("私の名前は山田です。よろしく") == "山田"

    def test_katakana_name_with_polite_marker(self):
        assert extract_name("僕はケンタと申します") == "ケンタ"

    def test_four_character_name(self):
        assert extract_name("名前は山田太郎です") == "山田太郎"

    def test_first_match_only(self):
        assert extract_name("わたしはたろうです。ぼくははなこです") == "たろう"

    @pytest.mark.parametrize(
        "text",
        ["", "こんにちは", "今日は寒いです", "hello, I am Taro", "わたしはたです"],
    )
    def test_no_name(self, text):
        assert extract_name(text) is None

    def test_none_input(self):
        assert extract_name(None) is None


# ========================================================================
# merge_topics
# ========================================================================


class TestMergeTopics:
    def test_union(self):
        assert merge_topics({"映画"}, ["音楽", "映画"]) == {"映画", "音楽"}

    def test_does_not_mutate_existing(self):
        existing = {"映画"}
        merge_topics(existing, ["音楽"])
        assert existing == {"映画"}

    def test_idempotent(self):
        once = merge_topics({"料理"}, ["旅行"])
        assert merge_topics(once, ["旅行"]) == once

    def test_commutative(self):
        s, a, b = {"仕事"}, ["映画", "音楽"], ["音楽", "ゲーム"]
        assert merge_topics(merge_topics(s, a), b) == merge_topics(merge_topics(s, b), a)

    def test_drops_blank_and_non_string_entries(self):
        assert merge_topics(set(), ["", "  ", None, 3, " 趣味 "]) == {"趣味"}

    def test_none_incoming(self):
        assert merge_topics({"愚痴"}, None) == {"愚痴"}
