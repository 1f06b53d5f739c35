import io

from slab.logging import configure_logging, get_logger


class TestConfigureLogging:
    def test_level_filters_and_formats(self):
        stream = io.StringIO()
        configure_logging("info", stream=stream)
        logger = get_logger("slab.test")

        logger.debug("hidden %s", "detail")
        logger.info("applied %d file(s)", 2)

        out = stream.getvalue()
        assert "applied 2 file(s)" in out
        assert "hidden" not in out

    def test_no_color_codes_when_not_a_terminal(self):
        stream = io.StringIO()
        configure_logging("WARNING", stream=stream)

        get_logger().warning("plain")

        assert "\x1b[" not in stream.getvalue()
