from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Hashable, Iterable, List, Optional

import networkx as nx
import numpy as np

from phyloflow.core_utils.tree_utils import compute_node_depths
from phyloflow.errors import EmptyQueryError, MalformedFlowError, UnknownMemberError
from phyloflow.tree.branch_lengths import validate_branch_length

if TYPE_CHECKING:
    import pandas as pd

    from phyloflow.flow.flow_matrix import FlowMatrix


# ============================================================
# PosetTree (NetworkX.DiGraph subclass)
# ============================================================


class PosetTree(nx.DiGraph):
    """Rooted phylogenetic tree with parent → child edges.

    The class augments ``networkx.DiGraph`` with the conventions every other
    component of the library relies on:

    * the root (in-degree 0) is tracked in ``graph["root"]`` and retrieved via
      :meth:`root`. It is stored explicitly rather than inferred from node
      naming.
    * nodes carry ``is_leaf`` and an optional human-readable ``label``.
    * edges carry a non-negative ``branch_length`` and, once encoded, a stable
      ``edge_id`` so identifiers survive serialization round trips.
    * constructors (:meth:`from_edge_table`, :meth:`from_newick`,
      :meth:`from_linkage`) live in :mod:`phyloflow.tree.io` and are exposed
      here for convenience.

    Leaves have ``out_degree == 0``.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._depths: Optional[Dict[Hashable, int]] = None

    # ---------------- Constructors ----------------

    @classmethod
    def from_edge_table(cls, edges: "pd.DataFrame", **kwargs) -> "PosetTree":
        """See :func:`phyloflow.tree.io.tree_from_edge_table`."""
        from phyloflow.tree.io import tree_from_edge_table

        return tree_from_edge_table(edges, **kwargs)

    @classmethod
    def from_newick(cls, newick: str) -> "PosetTree":
        """See :func:`phyloflow.tree.io.tree_from_newick`."""
        from phyloflow.tree.io import tree_from_newick

        return tree_from_newick(newick)

    @classmethod
    def from_linkage(
        cls,
        linkage_matrix: np.ndarray,
        leaf_names: Optional[List[str]] = None,
    ) -> "PosetTree":
        """See :func:`phyloflow.tree.io.tree_from_linkage`."""
        from phyloflow.tree.io import tree_from_linkage

        return tree_from_linkage(linkage_matrix, leaf_names)

    # ---------------- Mutation helpers ----------------

    def add_branch(
        self,
        parent: Hashable,
        child: Hashable,
        branch_length: Optional[float] = None,
        edge_id: Optional[Hashable] = None,
    ) -> None:
        """Attach ``child`` below ``parent`` with a validated branch length.

        Raises
        ------
        MalformedFlowError
            If ``child`` already has a parent or the length is invalid.
        """
        if child in self and self.in_degree(child) > 0:
            existing = next(self.predecessors(child))
            raise MalformedFlowError(
                f"Node {child!r} already has parent {existing!r}; cannot attach to {parent!r}."
            )
        attrs = {"branch_length": validate_branch_length(branch_length, edge=(parent, child))}
        if edge_id is not None:
            attrs["edge_id"] = edge_id
        self.add_edge(parent, child, **attrs)
        self._depths = None

    def finalize(self, root: Optional[Hashable] = None) -> "PosetTree":
        """Annotate leaves, cache the root and check the graph is one rooted tree.

        Returns ``self`` so constructors can end with ``return G.finalize()``.
        """
        roots = [u for u, d in self.in_degree() if d == 0]
        if root is None:
            if len(roots) != 1:
                raise MalformedFlowError(f"Expected one root, got {roots}")
            root = roots[0]
        elif roots != [root]:
            raise MalformedFlowError(f"Declared root {root!r} but in-degree-0 nodes are {roots}")
        if any(d > 1 for _, d in self.in_degree()):
            raise MalformedFlowError("A node has more than one incoming edge.")
        if not nx.is_tree(self):
            raise MalformedFlowError("Graph is not a single connected tree.")

        for n in self.nodes:
            self.nodes[n]["is_leaf"] = self.out_degree(n) == 0
        self.graph["root"] = root
        self._depths = None
        return self

    # ---------------- Poset helpers ----------------

    def root(self) -> Hashable:
        """Return the cached root node, discovering it if necessary."""
        r = self.graph.get("root")
        if r is None:
            roots = [u for u, d in self.in_degree() if d == 0]
            if len(roots) != 1:
                raise ValueError(f"Expected one root, got {roots}")
            r = roots[0]
            self.graph["root"] = r
        return r

    def parent(self, node: Hashable) -> Optional[Hashable]:
        """Return the parent of ``node`` or ``None`` for the root."""
        return next(self.predecessors(node), None)

    def branch_length(self, child: Hashable) -> float:
        """Length of the edge entering ``child``."""
        parent = self.parent(child)
        if parent is None:
            raise ValueError(f"Root node {child!r} has no incoming edge.")
        return float(self.edges[parent, child].get("branch_length", 1.0))

    def label(self, node: Hashable) -> Optional[str]:
        return self.nodes[node].get("label")

    def is_tip(self, node_id: Hashable) -> bool:
        """Check if a node is a leaf."""
        is_leaf_attr = self.nodes[node_id].get("is_leaf")
        if is_leaf_attr is not None:
            return bool(is_leaf_attr)
        return self.out_degree(node_id) == 0

    def get_leaves(
        self,
        node: Optional[Hashable] = None,
        return_labels: bool = True,
        sort: bool = True,
    ) -> List:
        """Collect leaf nodes globally or within a subtree.

        Parameters
        ----------
        node
            When ``None`` (default), returns all leaves. Otherwise restricts the search
            to the descendants of ``node``.
        return_labels
            If ``True`` (default) return the ``label`` attribute; otherwise return raw
            node ids.
        sort
            Whether to sort the returned values in ascending order.
        """
        if node is None:
            leaf_nodes = [n for n in self.nodes if self.is_tip(n)]
        elif self.is_tip(node):
            leaf_nodes = [node]
        else:
            leaf_nodes = [d for d in nx.descendants(self, node) if self.is_tip(d)]

        out = (
            [self.nodes[n].get("label", n) for n in leaf_nodes]
            if return_labels
            else leaf_nodes
        )
        return sorted(out, key=str) if sort else out

    def preorder(self) -> List[Hashable]:
        """Nodes in depth-first preorder from the root, children in insertion order."""
        return list(nx.dfs_preorder_nodes(self, source=self.root()))

    def depths(self) -> Dict[Hashable, int]:
        """Computes and caches node depths from the root."""
        if self._depths is None:
            self._depths = compute_node_depths(self)
        return self._depths

    def find_lca(self, node_a: Hashable, node_b: Hashable) -> Hashable:
        """Find the lowest common ancestor (LCA) of two nodes by walking parent pointers.

        Independent of the flow encoding; used to cross-check
        :func:`phyloflow.flow.mrca.find_mrca`.
        """
        if node_a == node_b:
            return node_a

        depths = self.depths()
        missing = [n for n in (node_a, node_b) if n not in depths]
        if missing:
            raise UnknownMemberError(missing)

        current_a, current_b = node_a, node_b
        depth_a, depth_b = depths[node_a], depths[node_b]
        # Bring nodes to the same depth, then walk up until they meet.
        while depth_a > depth_b:
            current_a = self.parent(current_a)
            depth_a -= 1
        while depth_b > depth_a:
            current_b = self.parent(current_b)
            depth_b -= 1
        while current_a != current_b:
            current_a = self.parent(current_a)
            current_b = self.parent(current_b)

        return current_a

    def find_lca_for_set(self, nodes: Iterable[Hashable]) -> Hashable:
        """Find the lowest common ancestor for a collection of nodes.

        Iteratively applies the two-node LCA.

        Raises
        ------
        EmptyQueryError
            If ``nodes`` is empty.
        """
        node_iterator = iter(nodes)
        try:
            lca = next(node_iterator)
        except StopIteration:
            raise EmptyQueryError("Cannot compute the LCA of an empty node set.") from None
        if lca not in self:
            raise UnknownMemberError([lca])

        root = self.root()
        for node in node_iterator:
            lca = self.find_lca(lca, node)
            if lca == root:
                return root
        return lca

    # ---------------- Flow encoding ----------------

    def to_flow_matrix(self) -> "FlowMatrix":
        """Encode this tree as a :class:`~phyloflow.flow.flow_matrix.FlowMatrix`."""
        from phyloflow.flow.codec import encode_tree

        return encode_tree(self)
