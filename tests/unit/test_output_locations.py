import pytest
from hlsq.domain.errors import JobInputError
from hlsq.domain.models import CacheLocation, JobSettings, SourceFile
from hlsq.pipeline.output_locations import cache_roots, candidate_cache_paths, join_logical, output_path_for


@pytest.fixture
def source():
    return SourceFile(filename="holiday.2023.mp4", directory="/videos/trips")


def test_join_logical():
    assert join_logical("/", "a/", "/b") == "/a/b"
    assert join_logical("", "") == "/"


def test_relative_location(source):
    settings = JobSettings(cache_location=CacheLocation.RELATIVE)
    assert output_path_for(source, settings) == "/videos/trips/.cached_hls/holiday.2023"


def test_relative_location_at_root():
    source = SourceFile(filename="clip.mov", directory="/")
    assert output_path_for(source, JobSettings()) == "/.cached_hls/clip"


def test_home_location(source):
    settings = JobSettings(cache_location=CacheLocation.HOME)
    assert output_path_for(source, settings) == "/.cached_hls/holiday.2023"


@pytest.mark.parametrize("custom,expected", [
    ("/mnt/cache", "/mnt/cache/.cached_hls/holiday.2023"),
    ("/mnt/cache/.cached_hls/", "/mnt/cache/.cached_hls/holiday.2023"),
    ("~/media", "/media/.cached_hls/holiday.2023"),
])
def test_custom_location(source, custom, expected):
    settings = JobSettings(cache_location=CacheLocation.CUSTOM, custom_path=custom)
    assert output_path_for(source, settings) == expected


def test_custom_location_requires_path(source):
    settings = JobSettings.model_construct(
        resolutions=["720p"], cache_location=CacheLocation.CUSTOM, custom_path="  ", overwrite_existing=False
    )
    with pytest.raises(JobInputError):
        output_path_for(source, settings)


def test_candidate_paths_start_next_to_source(source):
    candidates = candidate_cache_paths(source, ["./.cached_hls/", "~/.cached_hls/", "/mnt/cache/.cached_hls/"])

    assert candidates == [
        "/videos/trips/.cached_hls/holiday.2023",
        "/.cached_hls/holiday.2023",
        "/mnt/cache/.cached_hls/holiday.2023",
    ]


def test_cache_roots_skip_relative_and_dedupe():
    roots = cache_roots(["./.cached_hls/", "~/.cached_hls/", "/mnt/cache/.cached_hls/", "/mnt/cache/.cached_hls"])
    assert roots == ["/.cached_hls", "/mnt/cache/.cached_hls"]
