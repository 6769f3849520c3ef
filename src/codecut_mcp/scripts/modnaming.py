#!/usr/bin/env python3
"""Guess a module name from the strings its code references.

Reads the sanitized strings of one module from stdin (joined by the
``tzvlw`` separator, terminated by NUL) and prints the word that recurs in
the most distinct strings. Prints ``unknown`` when no word appears in at
least two strings.
"""

import re
import sys
from collections import Counter

SEPARATOR = "tzvlw"
UNKNOWN = "unknown"
MIN_WORD_LENGTH = 3
MIN_STRINGS = 2

STOPWORDS = {
    "the", "and", "for", "not", "with", "from", "this", "that", "are", "was",
    "can", "cannot", "could", "failed", "fail", "error", "errors", "warning",
    "invalid", "unable", "null", "true", "false", "out", "too", "has", "have",
    "get", "set", "value", "size", "len", "length", "ptr", "buf", "buffer",
    "data", "type", "file", "line", "bad", "ret", "returned", "unknown",
}


def candidate_words(text):
    for word in re.split(r"[\s.]+", text):
        word = word.lower()
        if len(word) < MIN_WORD_LENGTH:
            continue
        if word in STOPWORDS or word == SEPARATOR:
            continue
        if not re.match(r"^[a-z][a-z0-9]*$", word):
            continue
        yield word


def guess_name(payload):
    payload = payload.split("\0", 1)[0]
    strings = [s for s in payload.split(SEPARATOR) if s.strip()]

    counts = Counter()
    first_seen = {}
    for index, text in enumerate(strings):
        for word in set(candidate_words(text)):
            counts[word] += 1
            first_seen.setdefault(word, index)

    if not counts:
        return UNKNOWN

    best = max(counts, key=lambda w: (counts[w], len(w), -first_seen[w]))
    if counts[best] < MIN_STRINGS:
        return UNKNOWN
    return best


def main():
    payload = sys.stdin.read()
    sys.stdout.write(guess_name(payload) + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
