import json
import logging
from pathlib import Path

from bulkgen.core import ContentWriter

LOGGER = logging.getLogger("bulkgen.tests")


def read_json(path: Path):
    return json.loads(path.read_text(encoding="utf-8"))


def test_writer_merges_fields_and_translations(tmp_path: Path):
    writer = ContentWriter(tmp_path, logger=LOGGER)

    writer(5, "camera_script", None, {"text": "Good morning"})
    writer(5, "chapter_text", "KJV", {"text": "In the beginning"})
    writer(5, "tts", "KJV", {"audio_url": "kjv.mp3"})
    writer(5, "camera_script", None, {"text": "Second draft"})

    data = read_json(tmp_path / "5.json")
    assert data["id"] == 5
    assert data["fields"] == {"camera_script": {"text": "Second draft"}}
    assert data["translations"]["KJV"] == {
        "chapter_text": {"text": "In the beginning"},
        "tts": {"audio_url": "kjv.mp3"},
    }
    assert not (tmp_path / "5.json.tmp").exists()


def test_writer_replaces_unreadable_record(tmp_path: Path):
    (tmp_path / "8.json").write_text("{broken", encoding="utf-8")
    writer = ContentWriter(tmp_path, logger=LOGGER)

    writer.write(8, "background_prompt", None, {"prompt": "sunrise"})

    assert writer.read(8)["fields"]["background_prompt"] == {"prompt": "sunrise"}
