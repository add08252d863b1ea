import httpx
import pytest

from structures import InboundRequest, ProxyResponse, RequestState, UpstreamResponse


class TestStructures:
    def test_inbound_request_body_only_for_body_methods(self):
        post = InboundRequest("post", "/x", httpx.Headers(), b"{}", "1.1.1.1")
        get = InboundRequest("GET", "/x", httpx.Headers(), b"ignored", "1.1.1.1")
        assert post.method == "POST"
        assert post.body == b"{}"
        assert get.body is None

    def test_inbound_request_rejects_text_body(self):
        with pytest.raises(TypeError):
            InboundRequest("POST", "/", httpx.Headers(), "text")

    def test_origin_and_user_agent(self):
        req = InboundRequest("GET", "/", httpx.Headers({"ORIGIN": "https://a", "User-Agent": "curl"}))
        assert req.origin == "https://a"
        assert req.user_agent == "curl"
        blank = InboundRequest("GET", "/", httpx.Headers({"Origin": ""}), client_addr="")
        assert blank.origin is None
        assert blank.client_addr is None

    def test_upstream_response_status_bounds(self):
        with pytest.raises(ValueError):
            UpstreamResponse(600, httpx.Headers(), b"")
        assert UpstreamResponse(204, httpx.Headers(), b"").status_code == 204

    def test_proxy_response_header_lookup(self):
        resp = ProxyResponse(200, [("Content-Type", "text/plain")], b"ok", RequestState.RESPONDING)
        assert resp.header("content-type") == "text/plain"
        assert resp.header("x-missing") is None
