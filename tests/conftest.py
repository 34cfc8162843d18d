"""
Shared pytest fixtures and fakes for PocketLLM tests.
"""

import pytest

from pocketllm.context import ModelContext

EOS_ID = 0


class ScriptedContext(ModelContext):
    """Model context that "generates" a fixed list of pieces.

    Token 0 is end-of-generation; every distinct piece gets its own id.
    After the prompt decode the scores pick the first scripted token, after
    each fed token the next one. Once the script runs out it picks EOS.
    """

    def __init__(
        self,
        pieces,
        end_with_eos: bool = False,
        fail_decode_calls=(),
        no_scores_at=(),
    ):
        super().__init__()
        self.vocab = ["<eos>"]
        self.script = []
        for piece in pieces:
            if piece not in self.vocab:
                self.vocab.append(piece)
            self.script.append(self.vocab.index(piece))
        if end_with_eos:
            self.script.append(EOS_ID)
        self.fail_decode_calls = set(fail_decode_calls)
        self.no_scores_at = set(no_scores_at)

        self.decode_calls = 0
        self.decoded = []  # list of [(token, position, logits), ...] per call
        self.detokenized = []
        self.cache_clears = 0
        self.tokenized = []  # (text, add_special_tokens) per call
        self._step = None
        self._since_clear = 0

    def tokenize(self, text, add_special_tokens=True):
        self.tokenized.append((text, add_special_tokens))
        return [len(self.vocab) + i for i in range(len(text.split()))]

    def vocabulary_size(self):
        return len(self.vocab)

    def is_end_of_generation(self, token_id):
        return token_id == EOS_ID

    def detokenize(self, token_id):
        self.detokenized.append(token_id)
        return self.vocab[token_id]

    def decode(self, batch):
        call = self.decode_calls
        self.decode_calls += 1
        self.decoded.append(list(batch.slots()))
        if call in self.fail_decode_calls:
            return False
        self._step = self._since_clear
        self._since_clear += 1
        return True

    def get_scores(self, slot):
        if self._step is None or self._step in self.no_scores_at:
            return None
        if self._step < len(self.script):
            target = self.script[self._step]
        else:
            target = EOS_ID
        scores = [0.0] * len(self.vocab)
        scores[target] = 1.0
        return scores

    def clear_cache(self):
        self.cache_clears += 1
        self._step = None
        self._since_clear = 0


@pytest.fixture
def collected():
    """A list plus its append method, usable as an emission sink."""
    fragments = []
    return fragments, fragments.append
