"""Tests for the text segmenters."""
import pytest

from kbchat.chunking.chunker import (
    OverlapSegmenter,
    TokenWindowSegmenter,
    build_segmenter,
    count_tokens,
)

SENTENCE = "The quick brown fox jumps over the lazy dog. "


class TestOverlapSegmenter:

    def setup_method(self):
        self.segmenter = OverlapSegmenter(chunk_size=800, overlap=300)

    def test_two_thousand_chars_yield_three_or_four_chunks(self):
        text = (SENTENCE * 50)[:2000]
        segments = self.segmenter.segment(text)

        assert 3 <= len(segments) <= 4
        for previous, current in zip(segments, segments[1:]):
            assert current.start <= previous.end - 300
        assert segments[-1].end == len(text)

    def test_windows_are_contiguous(self):
        text = (SENTENCE * 80)[:3500]
        segments = self.segmenter.segment(text)

        assert segments[0].start == 0
        for previous, current in zip(segments, segments[1:]):
            assert current.start < previous.end
            assert current.start > previous.start

    def test_chunk_length_bounded_by_window(self):
        text = "word " * 1000
        for segment in self.segmenter.segment(text):
            assert len(segment.text) <= 800

    def test_prefers_sentence_boundary(self):
        text = (SENTENCE * 50)[:2000]
        first = self.segmenter.segment(text)[0]
        assert first.text.endswith(".")

    def test_falls_back_to_word_boundary(self):
        text = "abcdefghi " * 200
        first = self.segmenter.segment(text)[0]
        assert text[first.end] == " "

    def test_hard_cut_without_boundaries(self):
        text = "x" * 2000
        segments = self.segmenter.segment(text)
        assert segments[0].end == 800

    def test_short_chunks_are_dropped(self):
        segmenter = OverlapSegmenter(chunk_size=800, overlap=300, min_chunk_chars=50)
        assert segmenter.split("Too short to keep.") == []
        assert all(len(s) >= 50 for s in segmenter.split(SENTENCE * 40))

    def test_same_text_same_segments(self):
        text = SENTENCE * 60
        assert self.segmenter.split(text) == self.segmenter.split(text)

    def test_overlap_larger_than_window_still_terminates(self):
        segmenter = OverlapSegmenter(chunk_size=100, overlap=400, min_chunk_chars=1)
        segments = segmenter.segment("y" * 1000)
        assert segments[-1].end == 1000

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            OverlapSegmenter(chunk_size=0)
        with pytest.raises(ValueError):
            OverlapSegmenter(overlap=-1)


class TestTokenWindowSegmenter:

    def test_windows_respect_token_budget(self):
        segmenter = TokenWindowSegmenter(window_tokens=64, overlap_tokens=16, min_chunk_chars=10)
        segments = segmenter.segment(SENTENCE * 100)

        assert len(segments) > 1
        for segment in segments:
            assert count_tokens(segment.text) <= 64

    def test_overlap_must_be_smaller_than_window(self):
        with pytest.raises(ValueError):
            TokenWindowSegmenter(window_tokens=32, overlap_tokens=32)


def test_build_segmenter_by_strategy_name():
    assert build_segmenter("overlap").name == "overlap"
    assert build_segmenter("token").name == "token"
    with pytest.raises(ValueError):
        build_segmenter("sentences")
