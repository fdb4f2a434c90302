"""Tests for creative brief derivation and sub-task planning."""

from unittest.mock import AsyncMock

import pytest

from adstudio.models import CreativeBrief, OperationKind
from adstudio.schemas.job import SceneSpec
from adstudio.services.creative_brief import (
    build_plan,
    derive_brief,
    fallback_brief,
    final_video_prompt,
)


class TestDeriveBrief:
    @pytest.mark.asyncio
    async def test_uses_writer_result(self, make_spec) -> None:
        brief = CreativeBrief("Sunrise over studio", "Hear More", "Meet Aurora.")
        writer = AsyncMock()
        writer.write_brief.return_value = brief

        assert await derive_brief(make_spec(), writer) == brief

    @pytest.mark.asyncio
    async def test_writer_failure_falls_back(self, make_spec) -> None:
        """[P1] Creative research failure never fails the job."""
        writer = AsyncMock()
        writer.write_brief.side_effect = RuntimeError("search tool unavailable")

        brief = await derive_brief(make_spec(), writer)

        assert brief == fallback_brief(make_spec())
        assert brief.slogan == "AURORA HEADPHONES: REDEFINED."

    @pytest.mark.asyncio
    async def test_incomplete_brief_falls_back(self, make_spec) -> None:
        writer = AsyncMock()
        writer.write_brief.return_value = CreativeBrief("", "Slogan", "Script")

        assert await derive_brief(make_spec(), writer) == fallback_brief(make_spec())

    def test_fallback_includes_intro_and_outro(self, make_spec) -> None:
        brief = fallback_brief(make_spec(intro_text="Open on a city", outro_text="Logo"))
        assert "Start with: Open on a city." in brief.visual_prompt
        assert "End with: Logo." in brief.visual_prompt


class TestBuildPlan:
    def test_single_scene_plan(self, make_spec) -> None:
        """[P1] One mandatory video, one optional voice."""
        spec = make_spec(voice="Puck")
        brief = fallback_brief(spec)

        video, voice = build_plan(spec, brief)

        assert (video.name, video.kind, video.mandatory) == ("video", OperationKind.VIDEO, True)
        assert video.params["prompt"] == final_video_prompt(brief)
        assert 'slogan overlay that says: "AURORA HEADPHONES: REDEFINED."' in video.params["prompt"]
        assert video.params["image"]["mime_type"] == "image/png"
        assert (voice.name, voice.mandatory, voice.result_key) == ("voice", False, "voice_url")
        assert voice.params == {"text": brief.voiceover_script, "voice": "Puck"}

    def test_multi_scene_plan(self, make_spec) -> None:
        spec = make_spec(
            scenes=[
                SceneSpec(scene_id="a", visual_instruction="Close-up"),
                SceneSpec(scene_id="b", visual_instruction="Wide", voiceover_text="Listen."),
            ]
        )

        plan = build_plan(spec, None)

        assert [planned.name for planned in plan] == ["scene:a:video", "scene:b:video", "scene:b:voice"]
        assert [planned.mandatory for planned in plan] == [True, True, False]
        assert plan[1].result_key == "scene:b:video_url"
        assert plan[2].scene_id == "b"

    def test_extension_plan(self, make_spec) -> None:
        spec = make_spec(images=[], extend_from="https://media.test/a.mp4", extend_prompt="Zoom out")

        (extend,) = build_plan(spec, None)

        assert extend.kind is OperationKind.EXTEND_VIDEO
        assert extend.params["video_uri"] == "https://media.test/a.mp4"
        assert extend.params["prompt"] == "Smoothly extend the previous sequence: Zoom out"
