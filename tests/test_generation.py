import unittest
from unittest import mock

from replicate.exceptions import ModelError, ReplicateError

import generation
from errors import BadRequest, ExtractionError, UpstreamError


class _JsObject:
    def __str__(self):
        return "[object Object]"


class _FileOutput:
    def __init__(self, url):
        self.url = url


class _CallableUrl:
    def url(self):
        return "https://cdn.example/fn.png"


class ExtractImageUrlTests(unittest.TestCase):
    def test_list_of_strings(self):
        self.assertEqual("https://r/out.png", generation.extract_image_url(["https://r/out.png"]))

    def test_plain_string(self):
        self.assertEqual("https://r/out.png", generation.extract_image_url("https://r/out.png"))

    def test_list_with_href_object(self):
        self.assertEqual("http://x/y.png", generation.extract_image_url([{"href": "http://x/y.png"}]))

    def test_file_output_accessors(self):
        self.assertEqual("https://cdn.example/a.png",
                         generation.extract_image_url([_FileOutput("https://cdn.example/a.png")]))
        self.assertEqual("https://cdn.example/fn.png", generation.extract_image_url(_CallableUrl()))

    def test_opaque_object_fails(self):
        with self.assertRaises(ExtractionError):
            generation.extract_image_url(_JsObject())

    def test_empty_shapes_fail(self):
        for output in ("", [], None, {"other": 1}):
            with self.assertRaises(ExtractionError):
                generation.extract_image_url(output)

    def test_classify(self):
        self.assertIsInstance(generation.classify_output("x"), generation.TextOutput)
        self.assertIsInstance(generation.classify_output(["x"]), generation.UrlListOutput)
        self.assertIsInstance(generation.classify_output(_JsObject()), generation.AccessorOutput)


class SeedTests(unittest.TestCase):
    def test_explicit_seed_is_kept(self):
        self.assertEqual(42, generation.resolve_seed(42))
        self.assertEqual(42, generation.resolve_seed("42"))

    def test_random_seed_in_range(self):
        for _ in range(50):
            seed = generation.resolve_seed(None)
            self.assertTrue(0 <= seed < generation.SEED_SPACE)

    def test_bad_seed(self):
        with self.assertRaises(BadRequest):
            generation.resolve_seed("abc")


class GeneratorTests(unittest.TestCase):
    def setUp(self):
        self.client = mock.Mock()
        self.client.run.return_value = ["https://r/out.png"]
        self.gen = generation.ReplicateGenerator("token", client=self.client)

    def test_generate_art_with_preset(self):
        got = self.gen.generate_art("test", "schnell")

        self.assertEqual({"image": "https://r/out.png"}, got)
        model_ref, = self.client.run.call_args.args
        inputs = self.client.run.call_args.kwargs["input"]
        self.assertEqual("black-forest-labs/flux-schnell", model_ref)
        self.assertEqual("test", inputs["prompt"])
        self.assertEqual("1:1", inputs["aspect_ratio"])
        self.assertEqual(90, inputs["output_quality"])
        self.assertNotIn("seed", inputs)

    def test_generate_art_defaults_to_dev(self):
        self.gen.generate_art("a lake", seed=7, aspect_ratio="16:9")
        inputs = self.client.run.call_args.kwargs["input"]
        self.assertEqual("black-forest-labs/flux-dev", self.client.run.call_args.args[0])
        self.assertEqual(28, inputs["num_inference_steps"])
        self.assertEqual(7, inputs["seed"])
        self.assertEqual("16:9", inputs["aspect_ratio"])

    def test_generate_art_validation(self):
        with self.assertRaises(BadRequest):
            self.gen.generate_art("")
        with self.assertRaises(BadRequest):
            self.gen.generate_art("x", "turbo")
        with self.assertRaises(BadRequest):
            self.gen.generate_art("x", "dev", "2:1")
        self.client.run.assert_not_called()

    def test_generate_qr_art_clamps_strength_and_returns_seed(self):
        got = self.gen.generate_qr_art("https://code63.example/p/abc", "forest", qr_strength="9", seed=123)

        self.assertEqual({"image": "https://r/out.png", "seed": 123}, got)
        self.assertEqual(generation.QR_MODEL, self.client.run.call_args.args[0])
        inputs = self.client.run.call_args.kwargs["input"]
        self.assertEqual(2.5, inputs["qr_conditioning_scale"])
        self.assertEqual(generation.DEFAULT_NEGATIVE_PROMPT, inputs["negative_prompt"])
        self.assertEqual(20, inputs["num_inference_steps"])
        self.assertEqual(9, inputs["guidance_scale"])

    def test_generate_qr_art_draws_seed(self):
        got = self.gen.generate_qr_art("https://x", "forest")
        self.assertEqual(got["seed"], self.client.run.call_args.kwargs["input"]["seed"])
        self.assertEqual(1.8, self.client.run.call_args.kwargs["input"]["qr_conditioning_scale"])

    def test_generate_qr_art_requires_url(self):
        with self.assertRaises(BadRequest):
            self.gen.generate_qr_art("", "forest")

    def test_provider_error(self):
        self.client.run.side_effect = ReplicateError("boom")
        with self.assertRaises(UpstreamError):
            self.gen.generate_art("x")

    def test_failed_prediction_is_upstream_error(self):
        self.client.run.side_effect = ModelError(mock.Mock(error="prediction failed"))
        with self.assertRaises(UpstreamError) as ctx:
            self.gen.generate_qr_art("https://x", "forest")
        self.assertIn("prediction failed", ctx.exception.message)

    def test_non_string_fields_are_bad_requests(self):
        for kwargs in ({"prompt": 5}, {"prompt": "x", "model": ["dev"]}, {"prompt": "x", "aspect_ratio": ["1:1"]}):
            with self.assertRaises(BadRequest):
                self.gen.generate_art(**kwargs)
        with self.assertRaises(BadRequest):
            self.gen.generate_qr_art({"href": "https://x"}, "forest")
        self.client.run.assert_not_called()

    def test_missing_url_in_output(self):
        self.client.run.return_value = _JsObject()
        with self.assertRaises(ExtractionError):
            self.gen.generate_art("x")


if __name__ == "__main__":
    unittest.main()
