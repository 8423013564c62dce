import pytest

from helpers import run_context


@pytest.fixture
def make_ctx():
    """Run contexts with an open working directory, closed after the test."""
    made = []

    def make(**kwargs):
        ctx = run_context(**kwargs)
        made.append(ctx)
        return ctx

    yield make
    for ctx in made:
        ctx.close_workdir()
