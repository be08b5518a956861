"""Hungarian algorithm (Kuhn-Munkres) for slot/entity matching.

Models assignment as a minimum-cost bipartite matching:
- Rows: slots awaiting an entity
- Columns: candidate entities
- Edge weights: cost of placing the column entity in the row slot

Rosters are small (11-25), so the exact O(n^2 m) potential-based variant is
used rather than a heuristic. Ties resolve to the lowest column index, which
callers exploit by ordering columns by their tie-break rule.
"""

from typing import List, Optional, Sequence

INF = float("inf")


def solve_assignment(cost_matrix: Sequence[Sequence[float]]) -> List[int]:
    """
    Minimum cost matching of every row to a distinct column.

    Args:
        cost_matrix: n x m matrix with n <= m

    Returns:
        Assignment where assignment[i] = j means row i assigned to column j

    Raises:
        ValueError: More rows than columns, or ragged rows
    """
    n = len(cost_matrix)
    if n == 0:
        return []
    m = len(cost_matrix[0])
    if any(len(row) != m for row in cost_matrix):
        raise ValueError("Cost matrix rows must all have the same length")
    if n > m:
        raise ValueError(f"Cannot assign {n} rows to {m} columns")

    # 1-indexed potentials; column 0 is the virtual start of each augmenting path
    u = [0.0] * (n + 1)  # Row labels
    v = [0.0] * (m + 1)  # Column labels
    match_row = [0] * (m + 1)  # match_row[j] = i if column j matched to row i
    links = [0] * (m + 1)  # links[j] = previous column in augmenting path

    for i in range(1, n + 1):
        match_row[0] = i
        cur_col = 0
        mins = [INF] * (m + 1)  # mins[j] = minimum slack for column j
        visited = [False] * (m + 1)

        while True:
            visited[cur_col] = True
            cur_row = match_row[cur_col]
            delta = INF
            next_col = 0

            # Update slack from the current row, pick the tightest column
            for j in range(1, m + 1):
                if visited[j]:
                    continue
                slack = cost_matrix[cur_row - 1][j - 1] - u[cur_row] - v[j]
                if slack < mins[j]:
                    mins[j] = slack
                    links[j] = cur_col
                if mins[j] < delta:
                    delta = mins[j]
                    next_col = j

            # Update labels
            for j in range(m + 1):
                if visited[j]:
                    u[match_row[j]] += delta
                    v[j] -= delta
                else:
                    mins[j] -= delta

            cur_col = next_col
            # Stop once we reach an unmatched column
            if match_row[cur_col] == 0:
                break

        # Reconstruct augmenting path
        while cur_col:
            prev_col = links[cur_col]
            match_row[cur_col] = match_row[prev_col]
            cur_col = prev_col

    assignment = [-1] * n
    for j in range(1, m + 1):
        if match_row[j]:
            assignment[match_row[j] - 1] = j - 1
    return assignment


def maximize_assignment(score_matrix: Sequence[Sequence[float]],
                        pad_value: Optional[float] = None) -> List[int]:
    """
    Maximum score matching.

    When there are more rows than columns the matrix is padded with dummy
    columns scoring ``pad_value`` (default: below every real score), and
    rows matched to a dummy come back as -1.
    """
    n = len(score_matrix)
    if n == 0:
        return []
    m = len(score_matrix[0])

    flat = [value for row in score_matrix for value in row]
    top = max(flat) if flat else 0.0
    if pad_value is None:
        pad_value = (min(flat) if flat else 0.0) - 1.0

    width = max(m, n)
    cost = [
        [top - row[j] if j < m else top - pad_value for j in range(width)]
        for row in score_matrix
    ]
    assignment = solve_assignment(cost)
    return [j if j < m else -1 for j in assignment]


def assignment_total(matrix: Sequence[Sequence[float]], assignment: Sequence[int]) -> float:
    """Sum of matrix entries selected by an assignment (unmatched rows skipped)."""
    return sum(matrix[i][j] for i, j in enumerate(assignment) if j >= 0)
