"""
Tests for the SSRF-guarded web fetcher and its naming helpers.

HTTP is served by httpx.MockTransport and DNS by a fake resolver, so no test
touches the network.
"""
import httpx
import pytest

from src.core.errors import WebFetchError
from src.integrations.web_fetch import (
    fetch_web_resource,
    is_allowed_web_url,
    is_private_ip,
    normalize_fetched_name_and_mime,
    safe_host_for_name,
    slugify,
    sniff_content_type,
)


def public_resolver(host):
    return ["93.184.216.34"]


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestUrlPolicy:
    @pytest.mark.parametrize(
        "ip,private",
        [
            ("10.1.2.3", True),
            ("172.20.0.1", True),
            ("192.168.1.1", True),
            ("169.254.1.1", True),
            ("127.0.0.1", True),
            ("0.0.0.0", True),
            ("::1", True),
            ("fe80::1%eth0", True),
            ("garbage", True),
            ("8.8.8.8", False),
            ("::ffff:8.8.8.8", False),
        ],
    )
    def test_is_private_ip(self, ip, private):
        assert is_private_ip(ip) is private

    def test_is_allowed_web_url(self):
        assert not is_allowed_web_url("http://example.com/", public_resolver)
        assert not is_allowed_web_url("https://localhost/", public_resolver)
        assert not is_allowed_web_url("https://printer.local/", public_resolver)
        assert not is_allowed_web_url("https://127.0.0.1/", public_resolver)
        assert is_allowed_web_url("https://8.8.8.8/dns", public_resolver)
        assert is_allowed_web_url("https://example.com/a", public_resolver)
        assert not is_allowed_web_url("https://example.com/a", lambda h: [])
        assert not is_allowed_web_url("https://example.com/a", lambda h: ["93.184.216.34", "10.0.0.1"])

    def test_sniff_content_type(self):
        assert sniff_content_type(b"%PDF-1.7 ...") == "application/pdf"
        assert sniff_content_type(b"\x89PNG\r\n\x1a\n....") == "image/png"
        assert sniff_content_type(b"\xef\xbb\xbf  <!DOCTYPE html><html>") == "text/html"
        assert sniff_content_type(b"<?xml version='1.0'?>") == "text/xml"
        assert sniff_content_type(b"plain words") == "text/plain"
        assert sniff_content_type(b"\x00\x01\x02") == "application/octet-stream"


class TestFetch:
    def test_follows_checked_redirects(self):
        def handler(request):
            if request.url.path == "/start":
                return httpx.Response(302, headers={"location": "/final"})
            return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, content=b"<html>ok</html>")

        res = fetch_web_resource(
            "https://example.test/start", client=mock_client(handler), resolver=public_resolver
        )
        assert res.body == b"<html>ok</html>"
        assert res.mime_type == "text/html"
        assert res.final_url == "https://example.test/final"

    def test_missing_content_type_is_sniffed(self):
        client = mock_client(lambda request: httpx.Response(200, content=b"%PDF-1.4 body"))
        res = fetch_web_resource("https://example.test/doc", client=client, resolver=public_resolver)
        assert res.mime_type == "application/pdf"

    def test_blocked_urls(self):
        calls = []

        def handler(request):
            calls.append(str(request.url))
            return httpx.Response(302, headers={"location": "https://10.0.0.5/admin"})

        with pytest.raises(WebFetchError, match="blocked url"):
            fetch_web_resource("http://example.test/", client=mock_client(handler), resolver=public_resolver)
        assert calls == []
        with pytest.raises(WebFetchError, match="redirect blocked"):
            fetch_web_resource("https://example.test/", client=mock_client(handler), resolver=public_resolver)

    def test_redirect_loop(self):
        client = mock_client(lambda request: httpx.Response(301, headers={"location": "/again"}))
        with pytest.raises(WebFetchError, match="too many redirects"):
            fetch_web_resource("https://example.test/", client=client, resolver=public_resolver)

    def test_http_errors(self):
        client = mock_client(lambda request: httpx.Response(404))
        with pytest.raises(WebFetchError, match="http 404"):
            fetch_web_resource("https://example.test/", client=client, resolver=public_resolver)

        def refuse(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(WebFetchError):
            fetch_web_resource("https://example.test/", client=mock_client(refuse), resolver=public_resolver)

    def test_body_cap_has_a_floor(self):
        big = b"a" * (70 * 1024)
        client = mock_client(lambda request: httpx.Response(200, content=big))
        with pytest.raises(WebFetchError, match="too large"):
            fetch_web_resource("https://example.test/", max_bytes=1, client=client, resolver=public_resolver)
        small = mock_client(lambda request: httpx.Response(200, content=b"a" * 1000))
        assert len(fetch_web_resource("https://example.test/", max_bytes=1, client=small, resolver=public_resolver).body) == 1000


class TestNaming:
    def test_slugify(self):
        assert slugify("Intro to TCP/IP - Part 1!") == "intro_to_tcp_ip_part_1"
        assert slugify("") == ""
        assert len(slugify("x" * 200)) == 48

    def test_safe_host_for_name(self):
        assert safe_host_for_name("https://www.Example.com/a") == "example_com"
        assert safe_host_for_name("") == "site"

    def test_normalize_fetched_name_and_mime(self):
        assert normalize_fetched_name_and_mime("TCP Basics", "https://www.example.com/tcp", "text/html; charset=utf-8") == (
            "web_example_com_tcp_basics.html",
            "text/html",
        )
        assert normalize_fetched_name_and_mime("", "https://x.org/paper.PDF", "") == (
            "web_x_org_resource.pdf",
            "application/pdf",
        )
        assert normalize_fetched_name_and_mime("Notes", "https://x.org/n", "text/plain") == (
            "web_x_org_notes.txt",
            "text/plain",
        )
        assert normalize_fetched_name_and_mime("Pic", "https://x.org/p", "image/png") == (
            "web_x_org_pic.html",
            "image/png",
        )
