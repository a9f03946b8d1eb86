from typing import Tuple

from jobs.models import DeviceType, JobConfig, Viewport

DEVICE_PROFILES = {
    DeviceType.DESKTOP: (
        Viewport(width=1920, height=1080),
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    ),
    DeviceType.MOBILE: (
        Viewport(width=375, height=667),
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    ),
    DeviceType.TABLET: (
        Viewport(width=768, height=1024),
        "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
    ),
}


def resolve_device(config: JobConfig) -> Tuple[Viewport, str]:
    """Device defaults for the job, with per-job overrides taking precedence."""
    viewport, user_agent = DEVICE_PROFILES[config.device_type]
    options = config.options

    return options.viewport or viewport, options.user_agent or user_agent
