"""Tests for the headless evaluation runner."""

import asyncio

from edge.controller import DemoController
from edge.main import EvaluationRunner


class TestEvaluationRunner:
    def test_evaluates_every_sample(self, config, samples, fake_ort, capsys):
        runner = EvaluationRunner(DemoController(config, samples))

        exit_code = asyncio.run(runner.run(count=0, evaluate_all=True))

        output = capsys.readouterr().out
        assert exit_code == 0
        assert "Model ready" in output
        assert "100%" in output
        # Every prediction is Glaucoma; only the sample labelled Glaucoma is correct
        assert "Accuracy: 1/4 (25.00%)" in output
        assert output.count("Glaucoma ") >= 4

    def test_random_runs(self, config, samples, fake_ort, capsys):
        runner = EvaluationRunner(DemoController(config, samples))

        exit_code = asyncio.run(runner.run(count=3))

        assert exit_code == 0
        assert "/3]" in capsys.readouterr().out

    def test_failed_load_exits_nonzero(self, config, samples, fake_ort, tmp_path):
        config.model_url = str(tmp_path / "absent.onnx")
        runner = EvaluationRunner(DemoController(config, samples))

        assert asyncio.run(runner.run(count=2)) == 1

    def test_unreadable_sample_is_skipped(self, config, samples, fake_ort, tmp_path, capsys):
        (tmp_path / "emb_0.npy").unlink()
        controller = DemoController(config, samples)

        async def scenario():
            runner = EvaluationRunner(controller)
            assert await runner.load()
            return await runner.evaluate(0, evaluate_all=True)

        correct = asyncio.run(scenario())

        assert correct == 1
        assert "Accuracy: 1/4" in capsys.readouterr().out
