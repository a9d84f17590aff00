from importlib.metadata import PackageNotFoundError, version

import ralph_loop


def test_version_matches_installed_package_metadata() -> None:
    try:
        installed_version = version("ralph-loop")
    except PackageNotFoundError:
        assert ralph_loop.__version__ == "0.0.0"
    else:
        assert ralph_loop.__version__ == installed_version
