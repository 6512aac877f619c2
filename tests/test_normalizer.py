from __future__ import annotations

from datetime import datetime, timezone

import pytest

from webpuppet.errors import PayloadMissingFieldError, UnsupportedMediaKindError
from webpuppet.models import ContactType, Gender, MessageType
from webpuppet.normalizer import PayloadNormalizer, classify, filename_for, message_date
from webpuppet.schemas import WebAppMsgType, WebMessageType


def _normalizer(bridge, settings) -> PayloadNormalizer:
    return PayloadNormalizer(bridge, settings.media, settings.stabilization)


def _members(n: int) -> list:
    return [{"UserName": f"@m{i}", "DisplayName": f"member {i}"} for i in range(n)]


def test_classify_is_total_over_known_kinds():
    for kind in WebMessageType:
        first = classify(kind)
        assert isinstance(first, MessageType)
        assert classify(int(kind)) is first


@pytest.mark.parametrize("kind", [0, 2, 12345, -1, None, "bogus"])
def test_classify_unknown_kind_falls_back_to_text(kind):
    assert classify(kind) is MessageType.TEXT


def test_classify_known_mapping():
    assert classify(WebMessageType.EMOTICON) is MessageType.IMAGE
    assert classify(WebMessageType.MICROVIDEO) is MessageType.VIDEO
    assert classify(WebMessageType.VOICE) is MessageType.AUDIO
    assert classify(WebMessageType.APP) is MessageType.ATTACHMENT
    assert classify(WebMessageType.SYS) is MessageType.TEXT


def test_message_date_reads_seconds_and_milliseconds():
    expected = datetime(2018, 6, 1, tzinfo=timezone.utc)
    seconds = expected.timestamp()
    assert message_date({"MMDisplayTime": seconds}) == expected
    assert message_date({"MMDisplayTime": seconds * 1000}) == expected
    assert message_date({}) is None


def test_filename_appends_extension_from_kind():
    assert filename_for({"MsgId": "123", "MsgType": WebMessageType.IMAGE}) == "123.jpg"
    assert filename_for({"FileName": "report.pdf", "MsgType": WebMessageType.APP}) == "report.pdf"
    assert filename_for({"MediaId": "m1", "MMAppMsgFileExt": "docx", "MsgType": WebMessageType.APP}) == "m1.docx"
    assert filename_for({}) is None


def test_empty_contact_payload_is_unknown(fake_bridge, settings):
    contact = _normalizer(fake_bridge, settings).normalize_contact({})
    assert contact.gender is Gender.UNKNOWN
    assert contact.type is ContactType.UNKNOWN


def test_contact_fields(fake_bridge, settings):
    contact = _normalizer(fake_bridge, settings).normalize_contact(
        {
            "UserName": "@abc",
            "NickName": 'Alice <span class="emoji emoji1f334"></span>&amp; Co',
            "RemarkName": "ali",
            "Sex": 2,
            "VerifyFlag": 24,
            "StarFriend": 1,
            "stranger": False,
            "HeadImgUrl": "/cgi-bin/mmwebwx-bin/webwxgeticon?seq=1",
        }
    )
    assert contact.id == "@abc"
    assert contact.name == "Alice & Co"
    assert contact.alias == "ali"
    assert contact.gender is Gender.FEMALE
    assert contact.type is ContactType.OFFICIAL
    assert contact.star is True
    assert contact.friend is True


def test_room_id_is_never_official(fake_bridge, settings):
    contact = _normalizer(fake_bridge, settings).normalize_contact({"UserName": "@@room", "VerifyFlag": 8})
    assert contact.type is ContactType.PERSONAL


@pytest.mark.asyncio
async def test_room_stabilizes_on_two_equal_counts(fake_bridge, settings):
    counts = iter([2, 3, 3, 4])
    fake_bridge.contacts["@@room"] = lambda: {"UserName": "@@room", "MemberList": _members(next(counts))}

    raw = await _normalizer(fake_bridge, settings).room_raw_payload("@@room")

    assert len(raw["MemberList"]) == 3
    assert fake_bridge.count("get_contact", "@@room") == 3


@pytest.mark.asyncio
async def test_room_growing_forever_stops_after_seven_attempts(fake_bridge, settings):
    counter = iter(range(1, 1000))
    fake_bridge.contacts["@@room"] = lambda: {"UserName": "@@room", "MemberList": _members(next(counter))}

    raw = await _normalizer(fake_bridge, settings).room_raw_payload("@@room")

    assert fake_bridge.count("get_contact", "@@room") == 7
    assert len(raw["MemberList"]) == 7


@pytest.mark.asyncio
async def test_room_payload_builds_member_maps(fake_bridge, settings):
    fake_bridge.contacts["@@room"] = {
        "UserName": "@@room",
        "NickName": "Book club",
        "MemberList": [
            {"UserName": "@a", "DisplayName": "Reader A\U0001F4DA"},
            {"UserName": "@b", "DisplayName": ""},
        ],
    }
    fake_bridge.contacts["@a"] = {"UserName": "@a", "NickName": "Anna", "RemarkName": "anna-w"}
    fake_bridge.contacts["@b"] = {"UserName": "@b", "NickName": "Ben\U0001F600"}

    room = await _normalizer(fake_bridge, settings).room_payload("@@room")

    assert room.id == "@@room"
    assert room.topic == "Book club"
    assert room.member_id_list == ["@a", "@b"]
    assert room.name_map == {"@a": "Anna", "@b": "Ben"}
    assert room.room_alias_map == {"@a": "Reader A", "@b": ""}
    assert room.contact_alias_map == {"@a": "anna-w", "@b": ""}


@pytest.mark.asyncio
async def test_text_message(fake_bridge, settings):
    message = await _normalizer(fake_bridge, settings).normalize_message(
        {
            "MsgId": "1",
            "MsgType": WebMessageType.TEXT,
            "FromUserName": "@alice",
            "ToUserName": "@me",
            "MMActualSender": "@alice",
            "MMActualContent": "hi",
            "MMDisplayTime": 1527811200,
        }
    )
    assert message.type is MessageType.TEXT
    assert message.from_id == "@alice"
    assert message.to_id == "@me"
    assert message.room_id is None
    assert message.text == "hi"
    assert message.file is None


@pytest.mark.asyncio
async def test_room_message_takes_room_from_either_side(fake_bridge, settings):
    normalizer = _normalizer(fake_bridge, settings)
    inbound = await normalizer.normalize_message(
        {"MsgId": "1", "MsgType": 1, "MMIsChatRoom": True, "FromUserName": "@@room", "ToUserName": "@me"}
    )
    outbound = await normalizer.normalize_message(
        {"MsgId": "2", "MsgType": 1, "MMIsChatRoom": True, "FromUserName": "@me", "ToUserName": "@@room"}
    )
    assert inbound.room_id == "@@room"
    assert outbound.room_id == "@@room"
    assert outbound.to_id is None


@pytest.mark.asyncio
async def test_room_message_without_room_id_is_rejected(fake_bridge, settings):
    with pytest.raises(PayloadMissingFieldError) as exc_info:
        await _normalizer(fake_bridge, settings).normalize_message(
            {"MsgId": "1", "MsgType": 1, "MMIsChatRoom": True, "FromUserName": "@a", "ToUserName": "@b"}
        )
    assert exc_info.value.field == "room"


@pytest.mark.asyncio
async def test_image_message_carries_remote_file(fake_bridge, settings):
    fake_bridge.media_urls["9"] = "https://wx.qq.com/cgi-bin/mmwebwx-bin/webwxgetmsgimg?MsgID=9"

    message = await _normalizer(fake_bridge, settings).normalize_message(
        {"MsgId": "9", "MsgType": WebMessageType.IMAGE, "FromUserName": "@a", "ToUserName": "@me"}
    )

    assert message.type is MessageType.IMAGE
    assert message.file is not None
    assert message.file.url.startswith("http://wx.qq.com/")
    assert message.file.name == "9.jpg"
    assert message.file.headers["Cookie"] == "webwx_data_ticket=ticket1; wxuin=42"
    assert message.file.headers["Host"] == "wx.qq.com"
    assert fake_bridge.count("get_msg_img", "9") == 1


@pytest.mark.asyncio
async def test_attachment_requires_download_url(fake_bridge, settings):
    with pytest.raises(PayloadMissingFieldError) as exc_info:
        await _normalizer(fake_bridge, settings).normalize_message(
            {"MsgId": "5", "MsgType": WebMessageType.APP, "AppMsgType": WebAppMsgType.ATTACH, "FileName": "a.pdf"}
        )
    assert exc_info.value.field == "MMAppMsgDownloadUrl"


@pytest.mark.asyncio
async def test_unknown_app_message_kind_is_unsupported(fake_bridge, settings):
    with pytest.raises(UnsupportedMediaKindError):
        await _normalizer(fake_bridge, settings).normalize_message(
            {"MsgId": "5", "MsgType": WebMessageType.APP, "AppMsgType": WebAppMsgType.RED_ENVELOPES}
        )


@pytest.mark.asyncio
async def test_location_text_fetches_public_link_image(fake_bridge, settings):
    fake_bridge.media_urls["7"] = "http://wx.qq.com/map.jpg?x=1"

    message = await _normalizer(fake_bridge, settings).normalize_message(
        {"MsgId": "7", "MsgType": WebMessageType.TEXT, "SubMsgType": WebMessageType.LOCATION}
    )

    assert message.type is MessageType.TEXT
    assert message.file is not None and message.file.name == "7.jpg"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        {"MsgId": "20", "MsgType": WebMessageType.APP, "AppMsgType": WebAppMsgType.TRANSFERS, "MMActualContent": "transfer"},
        {"MsgId": "21", "MsgType": WebMessageType.APP, "AppMsgType": WebAppMsgType.ATTACH, "FileName": "a.pdf"},
        {"MsgId": "22", "MsgType": WebMessageType.TEXT, "SubMsgType": WebMessageType.LOCATION, "MMActualContent": "here"},
    ],
)
async def test_lenient_normalization_keeps_messages_without_file(fake_bridge, settings, raw):
    message = await _normalizer(fake_bridge, settings).normalize_message(raw, strict=False)

    assert message.id == raw["MsgId"]
    assert message.type is MessageType.TEXT
    assert message.file is None
    assert message.text == raw.get("MMActualContent", "")


@pytest.mark.asyncio
async def test_lenient_normalization_keeps_media_kind(fake_bridge, settings):
    message = await _normalizer(fake_bridge, settings).normalize_message(
        {"MsgId": "23", "MsgType": WebMessageType.IMAGE, "FromUserName": "@a", "ToUserName": "@me"}, strict=False
    )
    assert message.type is MessageType.IMAGE
    assert message.file is None


@pytest.mark.asyncio
async def test_lenient_normalization_still_rejects_room_without_id(fake_bridge, settings):
    with pytest.raises(PayloadMissingFieldError):
        await _normalizer(fake_bridge, settings).normalize_message(
            {"MsgId": "24", "MsgType": 1, "MMIsChatRoom": True, "FromUserName": "@a", "ToUserName": "@b"},
            strict=False,
        )
