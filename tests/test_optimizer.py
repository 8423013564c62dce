import pytest

from epub_optimizer.errors import Cancelled
from epub_optimizer.models import Classification, Outcome, ResourceSet
from epub_optimizer.optimizer import ResourceOptimizer

from helpers import add_resource, build_font, fake_encoders, noise_png


def test_protected_resources_are_skipped(make_ctx) -> None:
    ctx = make_ctx(encoders=fake_encoders())
    resource = add_resource(ctx, "OEBPS/images/a.png", noise_png(120, 120), protected=True)
    assert ResourceOptimizer(ctx).process(resource) is Outcome.SKIPPED
    assert resource.detail == "protected"


def test_other_resources_pass_through(make_ctx) -> None:
    ctx = make_ctx()
    resource = add_resource(ctx, "OEBPS/content.opf", b"<package/>")
    assert ResourceOptimizer(ctx).process(resource) is Outcome.SKIPPED
    assert resource.detail == "passthrough"


def test_terminal_outcomes_are_final(make_ctx) -> None:
    ctx = make_ctx(encoders=fake_encoders())
    resource = add_resource(ctx, "OEBPS/images/a.png", noise_png(120, 120))
    resource.mark(Outcome.DEDUPLICATED, "OEBPS/images/0.png")
    assert ResourceOptimizer(ctx).process(resource) is Outcome.DEDUPLICATED
    assert ctx.encoders["pngquant"].calls == []


def test_identical_content_reuses_cached_result(make_ctx) -> None:
    ctx = make_ctx(encoders=fake_encoders(0.5))
    data = noise_png(120, 120)
    first = add_resource(ctx, "OEBPS/images/a.png", data)
    second = add_resource(ctx, "OEBPS/images/b.png", data)
    optimizer = ResourceOptimizer(ctx)

    assert optimizer.process(first) is Outcome.OPTIMIZED
    calls = len(ctx.encoders["pngquant"].calls)
    assert optimizer.process(second) is Outcome.OPTIMIZED
    assert second.detail == "cached"
    assert len(ctx.encoders["pngquant"].calls) == calls
    assert second.file_path.read_bytes() == first.file_path.read_bytes()
    assert len(ctx.cache) == 1


def test_unexpected_handler_errors_fail_the_resource(make_ctx) -> None:
    def explode(resource, ctx):
        raise KeyError("boom")

    ctx = make_ctx()
    resource = add_resource(ctx, "OEBPS/style.css", b"p { color: red }" * 100)
    optimizer = ResourceOptimizer(ctx, handlers={Classification.MARKUP: explode})
    assert optimizer.process(resource) is Outcome.FAILED
    assert "boom" in resource.detail


def test_cancellation_propagates(make_ctx) -> None:
    ctx = make_ctx(encoders=fake_encoders())
    resource = add_resource(ctx, "OEBPS/images/a.png", noise_png(120, 120))
    ctx.cancel()
    optimizer = ResourceOptimizer(ctx)
    with pytest.raises(Cancelled):
        optimizer.process(resource)
    with pytest.raises(Cancelled):
        optimizer.run_group([resource])
    assert resource.outcome is Outcome.UNPROCESSED


def test_run_leaves_every_resource_terminal(make_ctx, tmp_path) -> None:
    ctx = make_ctx(encoders=fake_encoders(0.5), workers=3, font_floor=0)
    resources = ResourceSet()
    for i in range(4):
        resources.add(add_resource(ctx, f"OEBPS/images/{i}.png", noise_png(120, 120, seed=i)))
    resources.add(add_resource(ctx, "OEBPS/ch1.xhtml",
                               b"<html xmlns='http://www.w3.org/1999/xhtml'><body>\n\n<p>Hi</p>\n\n</body></html>"))
    resources.add(add_resource(ctx, "OEBPS/fonts/f.ttf", build_font(tmp_path / "f.ttf", "AB").read_bytes()))
    resources.add(add_resource(ctx, "OEBPS/content.opf", b"<package/>"))
    resources.characters = frozenset("A")

    ResourceOptimizer(ctx).run(resources)

    assert ctx.characters == frozenset("A")
    assert all(r.outcome is not Outcome.UNPROCESSED for r in resources.all)
    assert all(r.outcome is Outcome.OPTIMIZED for r in resources.images)
    assert resources.get("OEBPS/ch1.xhtml").detail == "below_floor"
    assert resources.get("OEBPS/fonts/f.ttf").outcome is Outcome.OPTIMIZED
    assert resources.get("OEBPS/content.opf").detail == "passthrough"
