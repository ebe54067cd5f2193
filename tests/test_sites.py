"""
Tests for credential encryption and site/feed registration.
"""

import pytest

from wpautopilot.crypto import SecretBox, decrypt_secret
from wpautopilot.errors import NotFoundError, ValidationError
from wpautopilot.sites import SiteService


class TestSecretBox:

    @pytest.mark.unit
    def test_round_trip_is_not_plaintext(self):
        box = SecretBox("master")
        token = box.encrypt("abcd efgh")
        assert token != "abcd efgh"
        assert box.decrypt(token) == "abcd efgh"

    @pytest.mark.unit
    def test_wrong_key(self):
        token = SecretBox("one").encrypt("secret")
        with pytest.raises(ValidationError, match="cannot be decrypted"):
            SecretBox("two").decrypt(token)

    @pytest.mark.unit
    def test_garbage_token(self):
        with pytest.raises(ValidationError):
            SecretBox("one").decrypt("not-a-token")


class TestSiteService:

    @pytest.fixture
    def sites(self, store):
        return SiteService(store)

    @pytest.mark.unit
    def test_add_site_encrypts_password(self, sites, owner, store):
        site = sites.add_site(
            owner, name=" Blog ", url="https://blog.example.com/", username="editor", app_password="pw 123"
        )
        stored = store.get_site(site.id, owner)
        assert stored.name == "Blog"
        assert stored.url == "https://blog.example.com"
        assert stored.encrypted_password != "pw 123"
        assert decrypt_secret(stored.encrypted_password) == "pw 123"
        assert "encrypted_password" not in stored.to_dict()

    @pytest.mark.unit
    @pytest.mark.parametrize("url", ["blog.example.com", "ftp://blog.example.com", "https://"])
    def test_rejects_non_http_urls(self, sites, owner, url):
        with pytest.raises(ValidationError):
            sites.add_site(owner, name="Blog", url=url, username="editor", app_password="pw")

    @pytest.mark.unit
    def test_requires_credentials(self, sites, owner):
        with pytest.raises(ValidationError):
            sites.add_site(owner, name="Blog", url="https://blog.example.com", username="", app_password="pw")

    @pytest.mark.unit
    def test_sites_are_owner_scoped(self, sites, site, owner):
        assert [s.id for s in sites.list_sites(owner)] == [site.id]
        assert sites.list_sites("someone-else") == []

    @pytest.mark.unit
    def test_delete_site(self, sites, site, owner, make_schedule, store):
        schedule = make_schedule()
        sites.delete_site(owner, site.id)
        assert sites.list_sites(owner) == []
        assert store.get_schedule(schedule.id).is_active is False
        with pytest.raises(NotFoundError):
            sites.delete_site(owner, site.id)

    @pytest.mark.unit
    def test_add_feed(self, sites, owner):
        feed = sites.add_feed(owner, name="", url="https://news.example.com/rss/")
        assert feed.name == "https://news.example.com/rss/"
        assert feed.url == "https://news.example.com/rss"
        assert sites.get_feed(owner, feed.id).id == feed.id
        assert sites.get_feed("other", feed.id) is None
