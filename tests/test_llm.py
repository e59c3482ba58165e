from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock, patch

import httpx

from pipeline import llm
from pipeline.images import ImagePayload
from pipeline.llm import (
    JSONExtractionError,
    LLMError,
    LLMVisionClient,
    ModelCredentials,
    coerce_credentials,
    extract_json_object,
    parse_model_json,
)
from schemas.continuity import VisionVerdict


class ExtractJsonObjectTests(unittest.TestCase):
    def test_plain_object(self):
        self.assertEqual(extract_json_object('{"isValid": true}'), {"isValid": True})

    def test_object_surrounded_by_prose_and_fences(self):
        text = 'Result:\n```json\n{"a": {"b": 1}}\n```\nThanks!'
        self.assertEqual(extract_json_object(text), {"a": {"b": 1}})

    def test_braces_inside_strings_are_ignored(self):
        text = '{"description": "a } stray {brace", "quote": "say \\"hi\\" }"} trailing {junk'
        self.assertEqual(
            extract_json_object(text),
            {"description": "a } stray {brace", "quote": 'say "hi" }'},
        )

    def test_first_object_wins(self):
        self.assertEqual(extract_json_object('{"a": 1} {"b": 2}'), {"a": 1})

    def test_missing_object_raises(self):
        for text in ("", None, "no braces at all", "[1, 2, 3]"):
            with self.assertRaises(JSONExtractionError):
                extract_json_object(text)

    def test_truncated_object_raises(self):
        with self.assertRaises(JSONExtractionError):
            extract_json_object('{"isValid": true, "errors": [')

    def test_invalid_json_raises(self):
        with self.assertRaises(JSONExtractionError):
            extract_json_object("{isValid: true}")

    def test_parse_model_json_validates_schema(self):
        verdict = parse_model_json('{"isValid": false, "errors": [{"type": "prop"}]}', VisionVerdict)
        self.assertFalse(verdict.is_valid)
        self.assertEqual(verdict.errors[0].type, "prop")
        self.assertEqual(verdict.errors[0].description, "")


class CredentialsTests(unittest.TestCase):
    def test_blank_keys_are_missing(self):
        self.assertIsNone(coerce_credentials(None))
        self.assertIsNone(coerce_credentials(""))
        self.assertIsNone(coerce_credentials(ModelCredentials(api_key="  ")))

    def test_bare_string_uses_default_provider(self):
        with patch("pipeline.llm.config.DEFAULT_PROVIDER", "google"):
            creds = coerce_credentials(" sk-123 ")
        self.assertEqual(creds.api_key, "sk-123")

    def test_camel_case_key_and_malformed_dicts(self):
        self.assertEqual(coerce_credentials({"apiKey": " k "}).api_key, "k")
        for value in ({}, {"api_key": None}, {"apiKey": 42, "provider": None}):
            self.assertIsNone(coerce_credentials(value))

    def test_dict_normalizes_provider(self):
        creds = coerce_credentials({"api_key": "k", "provider": " OpenAI ", "model": "gpt-4o"})
        self.assertEqual(creds.provider, "openai")
        self.assertEqual(creds.model, "gpt-4o")


class RetryableTests(unittest.TestCase):
    def test_transport_errors_are_retryable(self):
        self.assertTrue(llm._is_retryable(ConnectionError("reset")))
        self.assertTrue(llm._is_retryable(TimeoutError()))
        self.assertTrue(llm._is_retryable(httpx.ConnectError("refused")))

    def test_programming_errors_are_not(self):
        self.assertFalse(llm._is_retryable(ValueError("bad")))
        self.assertFalse(llm._is_retryable(LLMError("bad request")))


class CallVisionLLMTests(unittest.TestCase):
    def setUp(self):
        llm.reset_usage()

    def test_unknown_provider_raises_llm_error(self):
        creds = ModelCredentials(api_key="k", provider="mystery")
        with self.assertRaises(LLMError):
            asyncio.run(llm.call_vision_llm("sys", ["hi"], creds))

    def test_dispatches_to_provider_with_resolved_model(self):
        fake = AsyncMock(return_value='{"isValid": true}')
        creds = ModelCredentials(api_key="k", provider="openai")
        with patch.dict(llm._PROVIDERS, {"openai": fake}):
            text = asyncio.run(llm.call_vision_llm("sys", ["hi", ImagePayload(b"x")], creds))
        self.assertEqual(text, '{"isValid": true}')
        args = fake.await_args.args
        self.assertEqual(args[2], llm.config.DEFAULT_VISION_MODELS["openai"])
        self.assertEqual(args[3], "k")

    def test_non_retryable_failures_become_llm_error(self):
        fake = AsyncMock(side_effect=ValueError("invalid image"))
        creds = ModelCredentials(api_key="k", provider="google")
        with patch.dict(llm._PROVIDERS, {"google": fake}):
            with self.assertRaises(LLMError) as ctx:
                asyncio.run(llm.call_vision_llm("sys", ["hi"], creds, model="gemini-2.5-flash"))
        self.assertIn("invalid image", str(ctx.exception))
        self.assertEqual(fake.await_count, 1)

    def test_anthropic_rejects_oversized_images(self):
        big = ImagePayload(data=b"\0" * (4 * 1024 * 1024))
        with self.assertRaises(LLMError):
            asyncio.run(llm._call_anthropic("sys", [big], "claude-sonnet-4-5", "k", 0.2, 100))

    def test_stage_client_uses_stage_settings(self):
        creds = ModelCredentials(api_key="k", provider="anthropic", model="claude-haiku-4-5")
        client = LLMVisionClient(creds, stage="decision")
        self.assertEqual(client.model, "claude-haiku-4-5")
        self.assertEqual(client.temperature, llm.config.get_dop_llm_config("decision")["temperature"])

    def test_stage_client_uses_provider_default_model(self):
        with patch.dict(llm.config.DOP_LLM_CONFIG["vision"], {"provider": "google", "model": ""}):
            client = LLMVisionClient(ModelCredentials(api_key="k", provider="openai"), stage="vision")
        self.assertEqual(client.model, llm.config.OPENAI_VISION_MODEL)


class UsageTrackingTests(unittest.TestCase):
    def setUp(self):
        llm.reset_usage()

    def test_longest_prefix_pricing(self):
        self.assertEqual(llm.get_model_pricing("gpt-4.1-mini-2025"), llm.MODEL_PRICING["gpt-4.1-mini"])
        self.assertEqual(llm.get_model_pricing("unknown-model"), llm._FALLBACK_PRICING)

    def test_usage_summary_accumulates(self):
        llm._record_usage("google", "gemini-2.5-flash", 1_000_000, 0)
        llm._record_usage("google", "gemini-2.5-flash", 0, 1_000_000)
        summary = llm.get_usage_summary()
        self.assertEqual(summary["calls"], 2)
        self.assertEqual(summary["total_tokens"], 2_000_000)
        self.assertAlmostEqual(summary["total_cost"], 2.8)
        self.assertEqual(len(llm.get_usage_log()), 2)


if __name__ == "__main__":
    unittest.main()
