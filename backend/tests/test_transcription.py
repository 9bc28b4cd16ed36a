from reelfix.services.transcription_service import group_words_into_captions


def words(*items):
    return [{"word": w, "start": s, "end": e} for w, s, e in items]


def test_sentence_punctuation_ends_a_segment():
    segments = group_words_into_captions(words(
        (" Hello", 0.0, 0.4), (" world.", 0.4, 0.9), (" Next", 1.0, 1.3), (" one", 1.3, 1.6)
    ))

    assert [(s.start, s.end, s.text) for s in segments] == [
        (0.0, 0.9, "Hello world."),
        (1.0, 1.6, "Next one"),
    ]


def test_long_runs_are_split_at_max_words():
    run = words(*[(f" w{i}", float(i), float(i) + 0.5) for i in range(7)])

    segments = group_words_into_captions(run, max_words=3)

    assert [s.text for s in segments] == ["w0 w1 w2", "w3 w4 w5", "w6"]
    assert segments[1].start == 3.0


def test_no_words_no_segments():
    assert group_words_into_captions([]) == []
