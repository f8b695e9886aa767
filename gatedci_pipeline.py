# gatedci_pipeline.py
# CI for the workspace: lint + test on every platform, publish from trunk.
from __future__ import annotations

from gatedci import compiler_cache, matrix, on_trunk, pipe, sh, stage


def pipeline():
    return pipe(
        "ci",
        stage(
            "test",
            sh("Clippy", "cargo clippy -- -D warnings", compiles=True),
            sh("Run tests", "cargo test --all --all-features", compiles=True),
            matrix=[matrix("platform", ["macos-latest", "windows-latest", "ubuntu-latest"])],
            accelerator=compiler_cache(),
        ),
        stage(
            "release",
            sh("Install cargo plugins", "cargo install cargo-workspaces", compiles=True),
            sh("Publish", 'cargo workspaces publish --from-git --yes --token "$CRATES_IO_TOKEN"'),
            needs=["test"],
            runs_on={"platform": "ubuntu-latest"},
            when=on_trunk(),
            concurrency_group="release",
            accelerator=compiler_cache(),
        ),
        env={"CARGO_TERM_COLOR": "always", "RUST_BACKTRACE": "full"},
    )
