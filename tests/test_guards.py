"""
Tests for the authorization guards. The guards only see plain objects, so
repositories, users and image storage are all mocks here.
"""

from unittest.mock import Mock

import pytest

from media import UploadedImage
from middleware import GuardContext, Guards, NotFound, Redirect


@pytest.fixture
def repos():
    return {"users": Mock(), "posts": Mock(), "reviews": Mock(), "images": Mock()}


@pytest.fixture
def guards(repos):
    return Guards(**repos)


@pytest.fixture
def user():
    return Mock(is_authenticated=True, id="u1", username="bob")


@pytest.fixture
def upload():
    return UploadedImage("https://res.cloudinary.com/demo/me.jpg", "surf-shop/me")


class TestIsLoggedIn:
    def test_authenticated_passes(self, guards, user):
        assert guards.is_logged_in(GuardContext(user=user)) is None

    def test_anonymous_redirects_and_remembers_url(self, guards):
        ctx = GuardContext(user=Mock(is_authenticated=False), url="/posts/new")

        directive = guards.is_logged_in(ctx)

        assert directive == Redirect("/login", "You need to be logged in to do that!", remember="/posts/new")


class TestIsAuthor:
    def test_owner_gets_post_attached(self, guards, repos, user):
        post = Mock(author="u1")
        repos["posts"].get.return_value = post
        ctx = GuardContext(user=user, params={"id": "p1"})

        assert guards.is_author(ctx) is None
        assert ctx.locals["post"] is post
        repos["posts"].get.assert_called_once_with("p1")

    def test_foreign_post_redirects_back_without_attaching(self, guards, repos, user):
        repos["posts"].get.return_value = Mock(author="someone-else")
        ctx = GuardContext(user=user, params={"id": "p1"}, referrer="/posts/p1")

        directive = guards.is_author(ctx)

        assert directive == Redirect("/posts/p1", "Access denied!")
        assert "post" not in ctx.locals

    def test_foreign_post_without_referrer_goes_home(self, guards, repos, user):
        repos["posts"].get.return_value = Mock(author="someone-else")
        directive = guards.is_author(GuardContext(user=user, params={"id": "p1"}))
        assert directive.location == "/"

    def test_missing_post_is_not_found(self, guards, repos, user):
        repos["posts"].get.return_value = None
        directive = guards.is_author(GuardContext(user=user, params={"id": "nope"}))
        assert isinstance(directive, NotFound)


class TestIsReviewAuthor:
    def test_owner_passes(self, guards, repos, user):
        review = Mock(author="u1")
        repos["reviews"].get.return_value = review
        ctx = GuardContext(user=user, params={"review_id": "r1"})

        assert guards.is_review_author(ctx) is None
        assert ctx.locals["review"] is review

    def test_foreign_review_redirects_home(self, guards, repos, user):
        repos["reviews"].get.return_value = Mock(author="u2")
        directive = guards.is_review_author(GuardContext(user=user, params={"review_id": "r1"}))
        assert directive == Redirect("/", "Bye bye")

    def test_missing_review_is_not_found(self, guards, repos, user):
        repos["reviews"].get.return_value = None
        directive = guards.is_review_author(GuardContext(user=user, params={"review_id": "r1"}))
        assert isinstance(directive, NotFound)

    def test_review_of_another_post_is_not_found(self, guards, repos, user):
        repos["reviews"].get.return_value = Mock(author="u1", post="p2")
        ctx = GuardContext(user=user, params={"id": "p1", "review_id": "r1"})

        assert isinstance(guards.is_review_author(ctx), NotFound)
        assert "review" not in ctx.locals


class TestIsValidPassword:
    def test_correct_password_exposes_user(self, guards, repos, user):
        fresh = Mock()
        repos["users"].authenticate.return_value = fresh
        ctx = GuardContext(user=user, form={"currentPassword": "pw"})

        assert guards.is_valid_password(ctx) is None
        assert ctx.locals["user"] is fresh
        repos["users"].authenticate.assert_called_once_with("bob", "pw")

    def test_wrong_password_deletes_upload(self, guards, repos, user, upload):
        repos["users"].authenticate.return_value = None
        ctx = GuardContext(user=user, form={"currentPassword": "bad"}, upload=upload)

        directive = guards.is_valid_password(ctx)

        assert directive == Redirect("/profile", "Incorrect current password")
        repos["images"].delete.assert_called_once_with("surf-shop/me")

    def test_wrong_password_without_upload(self, guards, repos, user):
        repos["users"].authenticate.return_value = None
        guards.is_valid_password(GuardContext(user=user, form={}))
        repos["images"].delete.assert_not_called()


class TestChangePassword:
    def test_missing_confirmation(self, guards, repos, user, upload):
        ctx = GuardContext(user=user, form={"newPassword": "new", "passwordConfirmation": ""}, upload=upload)

        directive = guards.change_password(ctx)

        assert directive == Redirect("/profile", "Missing password confirmation!")
        repos["images"].delete.assert_called_once_with("surf-shop/me")

    def test_mismatch(self, guards, repos, user, upload):
        ctx = GuardContext(user=user, form={"newPassword": "a", "passwordConfirmation": "b"}, upload=upload)

        directive = guards.change_password(ctx)

        assert directive == Redirect("/profile", "New Passwords Must Match!")
        repos["images"].delete.assert_called_once_with("surf-shop/me")

    def test_match_sets_password_on_authenticated_user(self, guards, repos, user):
        account = Mock()
        ctx = GuardContext(
            user=user,
            form={"newPassword": "s3cret", "passwordConfirmation": "s3cret"},
            locals={"user": account},
        )

        assert guards.change_password(ctx) is None
        account.set_password.assert_called_once_with("s3cret")
        repos["images"].delete.assert_not_called()

    def test_no_new_password_passes_through(self, guards, repos, user):
        account = Mock()
        ctx = GuardContext(user=user, form={}, locals={"user": account})

        assert guards.change_password(ctx) is None
        account.set_password.assert_not_called()

    def test_confirmation_without_new_password(self, guards, repos, user, upload):
        ctx = GuardContext(user=user, form={"newPassword": "", "passwordConfirmation": "new"}, upload=upload)

        directive = guards.change_password(ctx)

        assert directive == Redirect("/profile", "Missing new password!")
        repos["images"].delete.assert_called_once_with("surf-shop/me")
