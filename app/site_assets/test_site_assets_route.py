import pytest

from app.site_assets.route import FALLBACK_FAVICON_URL, resolve_asset, router


@pytest.fixture
def client(make_client):
    return make_client(router)


class TestRobotsAndSitemap:
    def test_robots(self, client):
        response = client.get("/robots.txt")
        assert response.status_code == 200
        assert response.text == (
            "User-agent: *\nAllow: /\nSitemap: https://www.example.com/sitemap.xml\n"
        )

    def test_sitemap_urls_move_to_the_public_site(self, client, upstream):
        upstream.add(
            "https://example.wixsite.com/mysite/sitemap.xml",
            text=(
                "<urlset><url><loc>https://example.wixsite.com/mysite/about</loc></url>"
                "<url><loc>https://example.wixsite.com/blog</loc></url></urlset>"
            ),
            headers={"content-type": "application/xml"},
        )
        response = client.get("/sitemap.xml")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<loc>https://www.example.com/about</loc>" in response.text
        assert "<loc>https://www.example.com/blog</loc>" in response.text
        assert "wixsite" not in response.text

    @pytest.mark.parametrize("status", [404, 503])
    def test_missing_sitemap(self, client, upstream, status):
        upstream.add("https://example.wixsite.com/mysite/sitemap.xml", status, text="nope")
        response = client.get("/sitemap.xml")
        assert response.status_code == 404
        assert response.text == "No sitemap"


class TestLocalAssets:
    def test_serves_file(self, client, tmp_path):
        (tmp_path / "logo.png").write_bytes(b"\x89PNG")
        response = client.get("/assets/logo.png")
        assert response.status_code == 200
        assert response.content == b"\x89PNG"
        assert response.headers["content-type"] == "image/png"
        assert response.headers["cache-control"] == "public, max-age=31536000, immutable"

    def test_missing_file_falls_back_to_alternate_logo(self, client, tmp_path):
        (tmp_path / "logo1.png").write_bytes(b"alt")
        response = client.get("/assets/banner.png")
        assert response.status_code == 200
        assert response.content == b"alt"

    def test_missing_file(self, client):
        response = client.get("/assets/banner.png")
        assert response.status_code == 404
        assert response.text == "asset not found"

    def test_paths_outside_the_directory_are_refused(self, tmp_path):
        assert resolve_asset(str(tmp_path), "../secret.txt") is None
        assert resolve_asset(str(tmp_path), "/etc/passwd") is None
        assert resolve_asset(str(tmp_path), "img/a.png") == str((tmp_path / "img" / "a.png").resolve())


class TestFavicon:
    def test_first_existing_logo(self, client, tmp_path):
        (tmp_path / "logo1.png").write_bytes(b"second")
        response = client.get("/favicon.ico")
        assert response.status_code == 200
        assert response.content == b"second"
        assert response.headers["cache-control"] == "public, max-age=86400"

    def test_redirect_when_no_logo(self, client):
        response = client.get("/favicon.ico", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == FALLBACK_FAVICON_URL
