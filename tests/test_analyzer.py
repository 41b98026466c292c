from __future__ import annotations

import pytest

from bulkgen.analyzer import analyze, summarize_plan
from bulkgen.models import ContentItem, Creator, TaskStatus, TranslationFlags


def make_item(item_id: int = 1, post_date: str = "2024-03-01", **overrides) -> ContentItem:
    flags = {
        "has_camera_script": True,
        "has_devotional": True,
        "has_meditation": True,
        "has_meditation_audio": True,
        "has_background_prompt": True,
        "has_creator_video": True,
    }
    flags.update(overrides)
    return ContentItem(id=item_id, post_date=post_date, **flags)


def test_missing_content_fields_produce_two_phase_one_tasks():
    item = make_item(7, has_camera_script=False, has_background_prompt=False)

    tasks = analyze([item], "bible", [])

    assert [(task.field, task.phase) for task in tasks] == [
        ("background_prompt", 1),
        ("camera_script", 1),
    ]
    assert all(task.status is TaskStatus.PENDING for task in tasks)
    assert tasks[1].id == "7_camera_script"


def test_empty_items_are_excluded():
    item = make_item(has_camera_script=False)
    empty = ContentItem(id=2, post_date="2024-03-02", status="empty")

    tasks = analyze([item, empty], "bible", [])

    assert {task.item_id for task in tasks} == {1}


def test_translation_tasks_depend_on_text_for_same_code():
    item = make_item(
        3,
        translations=(
            TranslationFlags("KJV"),
            TranslationFlags("ES", has_translated_text=True, has_chapter_text=True),
        ),
    )

    tasks = analyze([item], "bible", ["KJV", "ES"])
    by_id = {task.id: task for task in tasks}

    assert set(by_id) == {"3_chapter_text_KJV", "3_tts_KJV", "3_tts_ES"}
    assert by_id["3_chapter_text_KJV"].phase == 2
    assert by_id["3_tts_KJV"].phase == 3
    assert by_id["3_tts_KJV"].depends_on == "3_chapter_text_KJV"
    # text already present, so TTS has nothing earlier in this run to wait on
    assert by_id["3_tts_ES"].depends_on is None


def test_expected_translation_missing_from_item_needs_text_and_audio():
    tasks = analyze([make_item(4)], "bible", ["NIV", "NIV", " "])

    assert [task.id for task in tasks] == ["4_chapter_text_NIV", "4_tts_NIV"]


def test_positivity_meditation_audio_follows_script():
    missing_script = make_item(5, has_meditation=False, has_meditation_audio=False)
    missing_audio_only = make_item(6, has_meditation_audio=False)

    tasks = analyze([missing_script, missing_audio_only], "positivity", ["KJV"])
    by_id = {task.id: task for task in tasks}

    assert set(by_id) == {"5_meditation_script", "5_meditation_audio", "6_meditation_audio"}
    assert by_id["5_meditation_audio"].depends_on == "5_meditation_script"
    assert by_id["6_meditation_audio"].depends_on is None
    assert all(task.field != "devotional_reflection" for task in tasks)


def test_video_requires_ai_creator_with_avatar():
    ai_creator = Creator(id=1, name="Ava", is_ai=True, heygen_avatar_id="avatar-1")
    human = Creator(id=2, name="Sam", is_ai=False, heygen_avatar_id="avatar-2")
    no_avatar = Creator(id=3, name="Bot", is_ai=True, heygen_avatar_id=None)
    items = [
        make_item(10, has_creator_video=False, has_camera_script=False, creator=ai_creator),
        make_item(11, has_creator_video=False, creator=human),
        make_item(12, has_creator_video=False, creator=no_avatar),
        make_item(13, has_creator_video=True, creator=ai_creator),
    ]

    tasks = analyze(items, "bible", [])
    videos = [task for task in tasks if task.field == "heygen_video"]

    assert [task.item_id for task in videos] == [10]
    assert videos[0].phase == 4
    assert videos[0].depends_on == "10_camera_script"


def test_ordering_is_by_phase_then_date_then_field():
    early = make_item(20, post_date="2024-03-01", has_background_prompt=False, translations=())
    late = make_item(21, post_date="2024-03-02", has_camera_script=False)

    tasks = analyze([late, early], "bible", ["KJV"])

    assert [task.id for task in tasks] == [
        "20_background_prompt",
        "21_camera_script",
        "20_chapter_text_KJV",
        "21_chapter_text_KJV",
        "20_tts_KJV",
        "21_tts_KJV",
    ]


def test_repeated_analysis_yields_identical_task_identities():
    items = [
        make_item(30, has_camera_script=False, has_devotional=False),
        make_item(31, post_date="2024-02-28", has_background_prompt=False),
    ]

    first = analyze(items, "bible", ["KJV", "ES"])
    second = analyze(list(reversed(items)), "bible", ["KJV", "ES"])

    assert [task.key for task in first] == [task.key for task in second]


def test_duplicate_items_are_planned_once():
    item = make_item(40, has_camera_script=False)

    tasks = analyze([item, item], "bible", [])

    assert [task.id for task in tasks] == ["40_camera_script"]


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        analyze([make_item()], "poetry", [])


def test_summarize_plan_counts_fields_per_phase():
    tasks = analyze([make_item(50, has_camera_script=False)], "bible", ["KJV"])

    assert summarize_plan(tasks) == {
        1: {"camera_script": 1},
        2: {"chapter_text": 1},
        3: {"tts": 1},
    }
