#!/usr/bin/env python3
"""
Exception types raised by the single-cell workflow

Every failure is fatal to the stage that raised it. The pipeline runner fills in
the stage name before re-raising so the caller can correct the input or the
configuration and resume from the last checkpoint.
"""


class ScWorkflowError(Exception):
    """Base class for workflow failures

    Args:
        message: Human readable description
        stage: Name of the pipeline stage that failed (optional)
        identifiers: Offending cell, gene or parameter names (optional)
    """

    def __init__(self, message, stage=None, identifiers=()):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.identifiers = tuple(identifiers)

    def __str__(self):
        text = self.message
        if self.stage:
            text = f"[{self.stage}] {text}"
        if self.identifiers:
            shown = ", ".join(str(i) for i in self.identifiers[:10])
            if len(self.identifiers) > 10:
                shown += f", ... ({len(self.identifiers)} total)"
            text = f"{text} (offending: {shown})"
        return text


class MalformedInputError(ScWorkflowError):
    """Input matrix, identifier axes or checkpoint file are structurally invalid"""


class EmptyCellError(ScWorkflowError):
    """A cell with zero total counts reached normalization"""


class InsufficientAnchorsError(ScWorkflowError):
    """Too few cross-dataset anchors were found for a dataset pair"""


class ConfigurationError(ScWorkflowError):
    """Parameters are out of range or inconsistent with each other"""
