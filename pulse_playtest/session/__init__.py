"""Session components: classification, routing, discussion, tracking, cost, runner.

Turn flow (see runner.SessionRunner):
  1. Narrator generates the next turn (degenerate output is regenerated).
  2. Classifier decides who answers and whether the story advanced.
  3. Private payoff check and tangent bookkeeping on the new narration.
  4. Router collects the players' answer (direct calls or a discussion).
  5. Checkpoint is written; the session ends on an ending, the turn budget
     or a turn-level failure.
"""
