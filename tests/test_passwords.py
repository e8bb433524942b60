from tenantauth.service.passwords import SecretHasher


def _hasher():
    return SecretHasher(time_cost=1, memory_cost=1024)


def test_hash_is_salted_and_verifies():
    hasher = _hasher()
    first = hasher.hash("correct horse")
    second = hasher.hash("correct horse")

    assert first != second
    assert first.startswith("$argon2id$")
    assert hasher.verify(first, "correct horse")
    assert hasher.verify(second, "correct horse")


def test_wrong_secret_does_not_verify():
    hasher = _hasher()
    assert not hasher.verify(hasher.hash("correct horse"), "battery staple")


def test_garbage_digest_returns_false():
    hasher = _hasher()
    assert hasher.verify("not-a-hash", "anything") is False
    assert hasher.verify("", "anything") is False
