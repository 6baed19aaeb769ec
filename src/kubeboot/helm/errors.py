# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeboot/helm/errors.py
class HelmError(RuntimeError):
    """Base class for Helm-related failures."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(f"{message}\n{output}".rstrip())
        self.output = output
