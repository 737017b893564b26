import random
import unittest

from reality_maker.models import Scene, TranscriptSegment
from reality_maker.services.scene_association import associate_transcripts, build_scene_transcript


def scene(scene_id: str, start: float, end: float, video_id: str = "v1") -> Scene:
    return Scene(id=scene_id, video_id=video_id, project_id="p1", start_time=start, end_time=end)


def seg(start: float, end: float, speaker: str = "person_1", text: str = "line", video_id: str = "v1", emotion=None):
    return TranscriptSegment(start=start, end=end, speaker=speaker, text=text, video_id=video_id, emotion=emotion)


SCENES = [scene("s1", 0, 10), scene("s2", 10, 20), scene("s3", 20, 30)]


class TestAssociateTranscripts(unittest.TestCase):
    def test_contained_segments_only(self) -> None:
        segments = [
            seg(1, 4, text="inside s1"),
            seg(8, 12, text="straddles s1/s2"),
            seg(10, 20, text="exactly s2"),
            seg(29, 31, text="runs past the end"),
        ]
        result = associate_transcripts(SCENES, segments)

        self.assertEqual(sorted(result), ["s1", "s2"])
        self.assertEqual(result["s1"].transcription, "person_1: inside s1")
        self.assertEqual(result["s2"].transcription, "person_1: exactly s2")

    def test_segment_on_shared_boundary(self) -> None:
        result = associate_transcripts(SCENES, [seg(10, 10.5, text="starts on boundary")])
        self.assertEqual(list(result), ["s2"])

    def test_overlapping_scenes_both_receive_segment(self) -> None:
        scenes = [scene("wide", 0, 30), scene("narrow", 5, 15)]
        result = associate_transcripts(scenes, [seg(6, 9)])
        self.assertEqual(sorted(result), ["narrow", "wide"])

    def test_segments_only_match_their_own_video(self) -> None:
        scenes = [scene("a", 0, 10, "v1"), scene("b", 0, 10, "v2")]
        segments = [seg(1, 2, text="from v2", video_id="v2"), seg(3, 4, text="from v3", video_id="v3")]
        result = associate_transcripts(scenes, segments)

        self.assertEqual(list(result), ["b"])
        self.assertEqual(result["b"].transcription, "person_1: from v2")

    def test_text_speakers_and_emotions(self) -> None:
        segments = [
            seg(1, 2, "person_2", "Who did this?", emotion="anger"),
            seg(3, 4, "person_1", "Not me."),
            seg(5, 6, "person_2", "Liar!", emotion="anger"),
        ]
        result = associate_transcripts(SCENES, segments)["s1"]

        self.assertEqual(result.transcription, "person_2: Who did this?\nperson_1: Not me.\nperson_2: Liar!")
        self.assertEqual(result.speakers, ["person_2", "person_1"])
        self.assertEqual(result.emotions, ["anger", "anger"])
        self.assertEqual([s["text"] for s in result.metadata["transcriptions"]], ["Who did this?", "Not me.", "Liar!"])

    def test_emotions_absent(self) -> None:
        result = associate_transcripts(SCENES, [seg(1, 2)])
        self.assertIsNone(result["s1"].emotions)

    def test_scenes_without_segments_are_omitted(self) -> None:
        self.assertEqual(associate_transcripts(SCENES, []), {})
        self.assertEqual(associate_transcripts([], [seg(1, 2)]), {})

    def test_input_order_does_not_matter(self) -> None:
        segments = [seg(i + 0.1, i + 0.9, f"person_{i % 3}", f"line {i}") for i in range(30)]
        expected = associate_transcripts(SCENES, segments)

        rng = random.Random(7)
        for _ in range(5):
            shuffled_scenes = list(SCENES)
            shuffled_segments = list(segments)
            rng.shuffle(shuffled_scenes)
            rng.shuffle(shuffled_segments)
            result = associate_transcripts(shuffled_scenes, shuffled_segments)
            self.assertEqual(
                {k: (v.transcription, v.speakers) for k, v in result.items()},
                {k: (v.transcription, v.speakers) for k, v in expected.items()},
            )

    def test_repeated_runs_are_identical(self) -> None:
        segments = [seg(1, 2, text="a"), seg(12, 14, text="b")]
        first = associate_transcripts(SCENES, segments)
        second = associate_transcripts(SCENES, segments)
        self.assertEqual(
            {k: v.transcription for k, v in first.items()},
            {k: v.transcription for k, v in second.items()},
        )

    def test_each_segment_lands_in_at_most_one_adjacent_scene(self) -> None:
        segments = [seg(i * 0.7, i * 0.7 + 1.3, text=str(i)) for i in range(40)]
        result = associate_transcripts(SCENES, segments)

        counts = {}
        for transcript in result.values():
            for s in transcript.segments:
                counts[s.text] = counts.get(s.text, 0) + 1
                owner = next(sc for sc in SCENES if sc.id == transcript.scene_id)
                self.assertLessEqual(owner.start_time, s.start)
                self.assertLessEqual(s.end, owner.end_time)
        self.assertTrue(all(c == 1 for c in counts.values()))


class TestBuildSceneTranscript(unittest.TestCase):
    def test_single_segment(self) -> None:
        result = build_scene_transcript("s1", [seg(1, 2, "person_3", "Hello")])
        self.assertEqual(result.scene_id, "s1")
        self.assertEqual(result.transcription, "person_3: Hello")
        self.assertEqual(result.speakers, ["person_3"])


if __name__ == "__main__":
    unittest.main()
