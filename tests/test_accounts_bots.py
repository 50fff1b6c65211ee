import pytest

from chatharbor.service.accounts import AccountService, normalize_email, validate_password
from chatharbor.service.bots import MAX_DOCUMENTS_PER_UPLOAD, BotService
from chatharbor.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from chatharbor.service.identity import IdentityVerifier, TokenIssuer
from chatharbor.storage.memory import MemoryStore

SECRET = "accounts-test-secret"
PASSWORD = "Sup3rSecret"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def accounts(store):
    return AccountService(store, TokenIssuer(SECRET))


@pytest.fixture
def bots(store):
    return BotService(store, default_model="test-model")


class TestAccounts:
    def test_register_hashes_password_and_issues_token(self, accounts, store):
        issued = accounts.register(" Alice@Example.COM ", PASSWORD, "Alice")
        assert issued.user.email == "alice@example.com"
        stored = store.get_user(issued.user.id)
        assert stored.password_hash.startswith("$argon2id$")
        assert PASSWORD not in stored.password_hash

    async def test_issued_token_verifies(self, accounts):
        issued = accounts.register("alice@example.com", PASSWORD, "Alice")
        verifier = IdentityVerifier(SECRET, accounts.find_principal)
        principal = await verifier.verify(f"Bearer {issued.token}")
        assert principal.id == issued.user.id
        assert principal.display_name == "Alice"

    def test_duplicate_email_conflicts(self, accounts):
        accounts.register("alice@example.com", PASSWORD, "Alice")
        with pytest.raises(ConflictError):
            accounts.register("ALICE@example.com", PASSWORD, "Alice Again")

    def test_login(self, accounts):
        registered = accounts.register("alice@example.com", PASSWORD, "Alice")
        issued = accounts.login("alice@example.com", PASSWORD)
        assert issued.user.id == registered.user.id

    @pytest.mark.parametrize(
        "email, password",
        [("alice@example.com", "WrongPass1"), ("nobody@example.com", PASSWORD)],
    )
    def test_login_failures_share_message(self, accounts, email, password):
        accounts.register("alice@example.com", PASSWORD, "Alice")
        with pytest.raises(AuthenticationError) as excinfo:
            accounts.login(email, password)
        assert excinfo.value.message == "Invalid credentials"

    def test_short_name_rejected(self, accounts):
        with pytest.raises(ValidationError):
            accounts.register("alice@example.com", PASSWORD, "A")

    def test_find_principal_unknown(self, accounts):
        assert accounts.find_principal("missing") is None

    @pytest.mark.parametrize("password", ["short1A", "alllowercase1", "ALLUPPER1", "NoDigitsHere"])
    def test_password_rules(self, password):
        with pytest.raises(ValidationError):
            validate_password(password)

    @pytest.mark.parametrize("email", ["", "plain", "a@b", "a b@example.com"])
    def test_bad_emails(self, email):
        with pytest.raises(ValidationError):
            normalize_email(email)


class TestBots:
    def test_training_text_becomes_first_document(self, bots):
        bot = bots.create_bot(
            "owner", "Helper", training_text=" hours: 9-5 ", documents=[("faq.txt", "faq")]
        )
        assert [d.filename for d in bot.documents] == ["training-text.txt", "faq.txt"]
        assert bot.documents[0].content == "hours: 9-5"
        assert bot.model_name == "test-model"

    def test_requires_training_data(self, bots):
        with pytest.raises(ValidationError):
            bots.create_bot("owner", "Helper", documents=[("blank.txt", "   ")])

    @pytest.mark.parametrize("name", ["", "x", "n" * 101])
    def test_name_bounds(self, bots, name):
        with pytest.raises(ValidationError):
            bots.create_bot("owner", name, training_text="text")

    def test_document_count_limit(self, bots):
        docs = [(f"{i}.txt", "text") for i in range(MAX_DOCUMENTS_PER_UPLOAD + 1)]
        with pytest.raises(ValidationError):
            bots.create_bot("owner", "Helper", documents=docs)

    def test_owned_lookup_hides_foreign_bots(self, bots):
        bot = bots.create_bot("owner", "Helper", training_text="text")
        assert bots.get_owned_bot(bot.id, "owner") is bot
        with pytest.raises(NotFoundError):
            bots.get_owned_bot(bot.id, "intruder")

    def test_inactive_bot_not_embeddable(self, bots):
        bot = bots.create_bot("owner", "Helper", training_text="text")
        assert bots.get_embedded_bot(bot.embed_code) is bot
        bot.is_active = False
        with pytest.raises(NotFoundError):
            bots.get_embedded_bot(bot.embed_code)

    def test_add_documents(self, bots):
        bot = bots.create_bot("owner", "Helper", training_text="text")
        updated = bots.add_documents(bot.id, "owner", [("more.txt", "more")])
        assert [d.filename for d in updated.documents] == ["training-text.txt", "more.txt"]
        with pytest.raises(ValidationError):
            bots.add_documents(bot.id, "owner", [("empty.txt", "")])
