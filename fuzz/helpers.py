import atheris


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeHeaders(self) -> list[tuple[str, str]]:
        count = self.ConsumeIntInRange(0, 8)
        return [(self.ConsumeUnicodeNoSurrogates(16), self.ConsumeUnicodeNoSurrogates(64)) for _ in range(count)]
