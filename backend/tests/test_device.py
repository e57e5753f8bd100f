from datetime import timedelta

from loginguard.db.models.known_device import KnownDevice
from loginguard.services import device

from conftest import NOW

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
EDGE_WINDOWS = CHROME_WINDOWS + " Edg/120.0.2210.91"
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
SAFARI_IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 17_2 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.2 Mobile/15E148 Safari/604.1"
)


def test_extract_desktop_browsers():
    chrome = device.extract(CHROME_WINDOWS)
    assert (chrome.browser_family, chrome.os_family, chrome.device_class) == ("Chrome", "Windows", "Desktop")
    assert chrome.is_mobile is False

    assert device.extract(EDGE_WINDOWS).browser_family == "Edge"

    firefox = device.extract(FIREFOX_LINUX)
    assert (firefox.browser_family, firefox.os_family) == ("Firefox", "Linux")


def test_extract_tablet():
    info = device.extract(SAFARI_IPAD)
    assert info.browser_family == "Safari"
    assert info.device_class == "Tablet"
    assert info.is_mobile is True


def test_extract_missing_user_agent():
    info = device.extract(None)
    assert info.fingerprint == "Unknown Browser|Unknown OS|Desktop"
    assert info.as_dict()["fingerprint"] == info.fingerprint


def test_first_device_is_not_novel(db_session):
    assert device.is_novel_device(db_session, "user@example.com", device.extract(CHROME_WINDOWS)) is False


def test_novelty_against_known_devices(db_session):
    chrome = device.extract(CHROME_WINDOWS)
    device.remember_device(db_session, "user@example.com", chrome, limit=5, now=NOW)

    assert device.is_novel_device(db_session, "user@example.com", chrome) is False
    assert device.is_novel_device(db_session, "user@example.com", device.extract(FIREFOX_LINUX)) is True
    assert device.is_novel_device(db_session, "other@example.com", device.extract(FIREFOX_LINUX)) is False


def test_known_devices_are_bounded(db_session):
    agents = [CHROME_WINDOWS, EDGE_WINDOWS, FIREFOX_LINUX]
    for offset, ua in enumerate(agents):
        device.remember_device(db_session, "user@example.com", device.extract(ua), limit=2, now=NOW + timedelta(minutes=offset))

    fingerprints = device.known_fingerprints(db_session, "user@example.com")
    assert fingerprints == {device.extract(EDGE_WINDOWS).fingerprint, device.extract(FIREFOX_LINUX).fingerprint}


def test_seen_device_is_refreshed_before_pruning(db_session):
    chrome = device.extract(CHROME_WINDOWS)
    device.remember_device(db_session, "user@example.com", chrome, limit=2, now=NOW)
    device.remember_device(db_session, "user@example.com", device.extract(EDGE_WINDOWS), limit=2, now=NOW + timedelta(minutes=1))
    device.remember_device(db_session, "user@example.com", chrome, limit=2, now=NOW + timedelta(minutes=2))
    device.remember_device(db_session, "user@example.com", device.extract(FIREFOX_LINUX), limit=2, now=NOW + timedelta(minutes=3))

    assert chrome.fingerprint in device.known_fingerprints(db_session, "user@example.com")
    assert db_session.query(KnownDevice).count() == 2


def test_forget_devices(db_session):
    device.remember_device(db_session, "user@example.com", device.extract(CHROME_WINDOWS), limit=5, now=NOW)
    assert len(device.list_devices(db_session, "user@example.com")) == 1
    assert device.forget_devices(db_session, "user@example.com") == 1
    assert device.list_devices(db_session, "user@example.com") == []
