from __future__ import annotations

import asyncio
import base64
import unittest

from pipeline.images import ImagePayload
from pipeline.llm import LLMError, ModelCredentials
from pipeline.vision_validator import SYSTEM_PROMPT, VisionContinuityValidator, assess_verdict, format_verdict
from schemas.continuity import Character, DopError, Product, ProjectSnapshot, Scene, VisionVerdict


def _data_url(raw: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


PREVIOUS_IMAGE = _data_url(b"previous-shot")
CURRENT_IMAGE = _data_url(b"current-shot")
CREDS = ModelCredentials(api_key="test-key", provider="google")


class _FakeClient:
    def __init__(self, response: str = "", exc: Exception | None = None):
        self.response = response
        self.exc = exc
        self.calls: list[tuple[str, list]] = []

    async def generate(self, system_prompt, parts):
        self.calls.append((system_prompt, list(parts)))
        if self.exc is not None:
            raise self.exc
        return self.response


class _Factory:
    def __init__(self, client: _FakeClient):
        self.client = client
        self.calls: list[tuple[ModelCredentials, str]] = []

    def __call__(self, credentials, stage):
        self.calls.append((credentials, stage))
        return self.client


def _project() -> ProjectSnapshot:
    return ProjectSnapshot(
        scenes=[
            Scene(id="s1", ordinal=1, group_id="kitchen", character_ids=["mai"], product_ids=["knife"],
                  context_description="Mai slices bread"),
            Scene(id="s2", ordinal=2, group_id="kitchen", character_ids=["mai"], product_ids=[],
                  context_description="Mai drops the knife"),
            Scene(id="s3", ordinal=3, group_id="garden", character_ids=["mai"]),
        ],
        characters=[Character(id="mai", name="Mai")],
        products=[Product(id="knife", name="Kitchen knife")],
    )


class VisionValidatorTests(unittest.TestCase):
    def setUp(self):
        self.project = _project()
        self.s1, self.s2, self.s3 = self.project.ordered_scenes()

    def _validate(self, factory, current=CURRENT_IMAGE, previous=PREVIOUS_IMAGE, creds=CREDS, scenes=None):
        validator = VisionContinuityValidator(self.project, client_factory=factory)
        current_scene, previous_scene = scenes or (self.s2, self.s1)
        return asyncio.run(validator.validate(current, previous, current_scene, previous_scene, creds))

    def test_missing_credentials_pass_without_model_call(self):
        factory = _Factory(_FakeClient('{"isValid": false}'))
        for creds in (None, "", "   ", {"api_key": ""}):
            verdict = self._validate(factory, creds=creds)
            self.assertTrue(verdict.is_valid)
            self.assertEqual(verdict.errors, [])
        self.assertEqual(factory.calls, [])

    def test_malformed_credential_dicts_pass_without_model_call(self):
        factory = _Factory(_FakeClient('{"isValid": false}'))
        for creds in ({}, {"api_key": None}, {"provider": "google"}, {"apiKey": "   "}):
            verdict = self._validate(factory, creds=creds)
            self.assertTrue(verdict.is_valid)
            self.assertEqual(verdict.errors, [])
        self.assertEqual(factory.calls, [])

    def test_camel_case_credentials_are_accepted(self):
        client = _FakeClient('{"isValid": true, "errors": []}')
        factory = _Factory(client)
        self._validate(factory, creds={"apiKey": "k", "provider": "OpenAI"})
        self.assertEqual(len(factory.calls), 1)
        creds, stage = factory.calls[0]
        self.assertEqual((creds.api_key, creds.provider, stage), ("k", "openai", "vision"))

    def test_missing_image_passes_without_model_call(self):
        factory = _Factory(_FakeClient('{"isValid": false}'))
        self.assertTrue(self._validate(factory, current="").is_valid)
        self.assertTrue(self._validate(factory, previous=None).is_valid)
        self.assertEqual(factory.calls, [])

    def test_unloadable_image_passes(self):
        factory = _Factory(_FakeClient('{"isValid": false}'))
        verdict = self._validate(factory, current="not-a-real-reference")
        self.assertTrue(verdict.is_valid)
        self.assertEqual(factory.calls, [])

    def test_request_parts_are_ordered_previous_then_current(self):
        client = _FakeClient('{"isValid": true, "errors": []}')
        factory = _Factory(client)
        self._validate(factory)

        self.assertEqual(factory.calls, [(CREDS, "vision")])
        system_prompt, parts = client.calls[0]
        self.assertEqual(system_prompt, SYSTEM_PROMPT)
        self.assertEqual(parts[0], "PREVIOUS SHOT:")
        self.assertEqual(parts[1], ImagePayload(data=b"previous-shot", mime_type="image/png"))
        self.assertEqual(parts[2], "CURRENT SHOT:")
        self.assertEqual(parts[3], ImagePayload(data=b"current-shot", mime_type="image/png"))
        self.assertIn("Mai drops the knife", parts[4])

    def test_prompt_names_rosters_and_same_location_rule(self):
        validator = VisionContinuityValidator(self.project)
        prompt = validator.build_prompt(self.s2, self.s1)
        self.assertIn("SAME LOCATION: Background must be strictly consistent.", prompt)
        self.assertIn("Props in previous: Kitchen knife", prompt)
        self.assertIn("Props expected: None", prompt)
        self.assertIn("Characters expected: Mai", prompt)

    def test_prompt_allows_transition_between_groups(self):
        prompt = VisionContinuityValidator(self.project).build_prompt(self.s3, self.s2)
        self.assertIn("DIFFERENT LOCATION: Transition allowed.", prompt)
        self.assertIn('Current Scene: "N/A"', prompt)

    def test_parses_verdict(self):
        response = (
            '{"isValid": false, "errors": [{"type": "prop", "description": "knife missing from hand"}], '
            '"correctionPrompt": "Show the knife on the floor"}'
        )
        verdict = self._validate(_Factory(_FakeClient(response)))
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.errors, [DopError(type="prop", description="knife missing from hand")])
        self.assertEqual(verdict.correction_prompt, "Show the knife on the floor")

    def test_parses_json_wrapped_in_prose(self):
        response = 'Here you go:\n```json\n{"isValid": true, "errors": null, "note": "brace } in text"}\n```'
        verdict = self._validate(_Factory(_FakeClient(response)))
        self.assertTrue(verdict.is_valid)
        self.assertEqual(verdict.errors, [])

    def test_null_validity_keeps_reported_errors(self):
        response = '{"isValid": null, "errors": [{"type": "prop", "description": "knife missing"}]}'
        verdict = self._validate(_Factory(_FakeClient(response)))
        self.assertTrue(verdict.is_valid)
        self.assertEqual(len(verdict.errors), 1)
        self.assertEqual(verdict.errors[0].description, "knife missing")

    def test_percent_score_is_normalized_not_rejected(self):
        response = '{"isValid": false, "errors": [{"type": "lighting", "description": "warmer"}], "score": 85}'
        verdict = self._validate(_Factory(_FakeClient(response)))
        self.assertFalse(verdict.is_valid)
        self.assertAlmostEqual(verdict.score, 0.85)
        self.assertEqual(len(verdict.errors), 1)

    def test_scored_verdict_drives_gate(self):
        client = _FakeClient('{"isValid": false, "errors": [{"type": "prop", "description": "cup moved"}], "score": 0.7}')
        verdict = self._validate(_Factory(client))
        self.assertEqual(assess_verdict(verdict), "ask_user")
        _, parts = client.calls[0]
        self.assertIn('"score": 0.0-1.0', parts[4])

    def test_client_errors_fail_open(self):
        for exc in (LLMError("quota"), RuntimeError("boom")):
            verdict = self._validate(_Factory(_FakeClient(exc=exc)))
            self.assertTrue(verdict.is_valid)
            self.assertEqual(verdict.errors, [])

    def test_unparsable_response_fails_open(self):
        for response in ("I cannot help with that.", '{"isValid": fals', '{"errors": "nope"}'):
            verdict = self._validate(_Factory(_FakeClient(response)))
            self.assertTrue(verdict.is_valid, response)
            self.assertEqual(verdict.errors, [])


class AssessVerdictTests(unittest.TestCase):
    def test_clean_verdict_continues(self):
        self.assertEqual(assess_verdict(VisionVerdict()), "continue")

    def test_invalid_with_errors_retries_without_score(self):
        verdict = VisionVerdict(is_valid=False, errors=[DopError(type="prop", description="cup moved")])
        self.assertEqual(assess_verdict(verdict), "retry")

    def test_score_thresholds(self):
        self.assertEqual(assess_verdict(VisionVerdict(score=0.4)), "retry")
        self.assertEqual(assess_verdict(VisionVerdict(score=0.7)), "ask_user")
        self.assertEqual(assess_verdict(VisionVerdict(score=0.95)), "continue")

    def test_strict_mode_retries_on_character_error(self):
        verdict = VisionVerdict(score=0.9, errors=[DopError(type="character", description="hair color changed")])
        self.assertEqual(assess_verdict(verdict), "continue")
        self.assertEqual(assess_verdict(verdict, strict=True), "retry")

    def test_out_of_range_and_garbage_scores(self):
        self.assertEqual(VisionVerdict(score=250).score, 1.0)
        self.assertEqual(VisionVerdict(score=-0.3).score, 0.0)
        self.assertIsNone(VisionVerdict(score="high").score)
        self.assertIsNone(VisionVerdict.model_validate({"isValid": None, "score": None}).score)

    def test_format_verdict(self):
        self.assertEqual(format_verdict(VisionVerdict(score=0.92)), "Raccord OK (92%)")
        verdict = VisionVerdict(is_valid=False, errors=[DopError(type="lighting", description="warmer light")])
        self.assertEqual(format_verdict(verdict), "Raccord issues: [lighting] warmer light")


if __name__ == "__main__":
    unittest.main()
