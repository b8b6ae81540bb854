import pytest

from rv32_pipeline_sim import PipelineConfig, PipelineCPU


@pytest.fixture
def run_program():
    """Load words (and optional data), run to completion, return the CPU."""

    def _run(words, data=None, mul_latency=0, memory_words=64,
             max_cycles=500):
        cpu = PipelineCPU(PipelineConfig(mul_latency=mul_latency,
                                         memory_words=memory_words))
        cpu.load_program(words)
        if data:
            cpu.load_data(data)
        cpu.run(max_cycles=max_cycles)
        return cpu

    return _run
