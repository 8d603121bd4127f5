import pytest

from lumina.errors import MaterializationError
from lumina.materializer import TransientMedia, materialize, release
from lumina.utils import build_data_uri, parse_data_uri


def test_durable_asset_is_returned_unchanged_every_time():
    durable = build_data_uri(b"png-bytes", "image/png")

    first = materialize(durable)
    second = materialize(first)

    assert first == durable
    assert second == first


def test_transient_media_is_encoded_and_closed():
    media = TransientMedia.from_bytes(b"video-bytes", "video/mp4")

    encoded = materialize(media)

    assert encoded.startswith("data:video/mp4;base64,")
    assert parse_data_uri(encoded) == (b"video-bytes", "video/mp4")
    assert media.closed


def test_materializing_the_result_again_is_a_no_op():
    encoded = materialize(TransientMedia.from_bytes(b"abc", "video/mp4"))

    assert materialize(encoded) == encoded


def test_closed_handle_cannot_be_materialized():
    media = TransientMedia.from_bytes(b"abc", "video/mp4")
    release(media)

    with pytest.raises(MaterializationError):
        materialize(media)


def test_empty_handle_is_rejected():
    with pytest.raises(MaterializationError):
        materialize(TransientMedia.spooled("video/mp4"))


def test_non_durable_reference_is_never_passed_through():
    with pytest.raises(MaterializationError):
        materialize("blob:http://localhost/1234")


@pytest.mark.parametrize("asset", [None, ""])
def test_text_only_results_have_empty_asset(asset):
    assert materialize(asset) == ""
