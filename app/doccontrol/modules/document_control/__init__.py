"""
Document control: numbered documents moving through a review/approval
lifecycle, with file relocation per status, immutable revisions and an
append-only approval trail. `lifecycle.transition()` is the only way a
document changes status.
"""
