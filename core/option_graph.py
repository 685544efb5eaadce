"""
# core/option_graph.py

Module Contract
- Purpose: Onboarding option tree stored as nodes referenced by id, validated once at construction.
- Inputs:
  - OptionNode records and the ids of the root options; max_depth from config (greeting.max_depth)
- Outputs:
  - OptionGraph.roots(), children(id), node(id), depth()
  - default_option_graph(): the greeting flow shipped with the app
- Error handling:
  - OptionGraphError for unknown child ids, cycles, or paths deeper than max_depth.
- Side effects:
  - None.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from config.app_config import GREETING_MAX_DEPTH


class OptionGraphError(ValueError):
    pass


@dataclass(frozen=True)
class OptionNode:
    id: str
    text: str
    response: str = ""
    children: Tuple[str, ...] = ()
    demo_video_url: Optional[str] = None
    demo_video_key: Optional[str] = None

    @property
    def is_demo(self) -> bool:
        return bool(self.demo_video_url or self.demo_video_key)


class OptionGraph:
    """Directed acyclic option graph with bounded depth"""

    def __init__(self, nodes: Iterable[OptionNode], roots: Sequence[str], max_depth: int = GREETING_MAX_DEPTH):
        self._nodes: Dict[str, OptionNode] = {}
        for node in nodes:
            if node.id in self._nodes:
                raise OptionGraphError(f"Duplicate option id: {node.id}")
            self._nodes[node.id] = node
        self._roots = tuple(roots)
        self.max_depth = max_depth
        self._validate()

    def _validate(self) -> None:
        for node_id in self._roots:
            if node_id not in self._nodes:
                raise OptionGraphError(f"Unknown root option: {node_id}")
        for node in self._nodes.values():
            for child in node.children:
                if child not in self._nodes:
                    raise OptionGraphError(f"Option {node.id} references unknown child {child}")

        # depth of the deepest path starting at each node (1 for a leaf)
        depths: Dict[str, int] = {}
        visiting = set()

        def visit(node_id: str, path: List[str]) -> int:
            if node_id in depths:
                return depths[node_id]
            if node_id in visiting:
                cycle = " -> ".join(path[path.index(node_id):] + [node_id])
                raise OptionGraphError(f"Cycle in option graph: {cycle}")
            visiting.add(node_id)
            path.append(node_id)
            deepest = 0
            for child in self._nodes[node_id].children:
                deepest = max(deepest, visit(child, path))
            path.pop()
            visiting.discard(node_id)
            depths[node_id] = deepest + 1
            return depths[node_id]

        for node_id in self._nodes:
            visit(node_id, [])

        for node_id in self._roots:
            if depths[node_id] > self.max_depth:
                raise OptionGraphError(
                    f"Option {node_id} nests {depths[node_id]} levels deep (max {self.max_depth})"
                )
        self._depths = depths

    def roots(self) -> List[OptionNode]:
        return [self._nodes[i] for i in self._roots]

    def root_ids(self) -> List[str]:
        return list(self._roots)

    def node(self, node_id: str) -> OptionNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise OptionGraphError(f"Unknown option: {node_id}") from None

    def children(self, node_id: str) -> List[OptionNode]:
        return [self._nodes[c] for c in self.node(node_id).children]

    def depth(self) -> int:
        return max((self._depths[r] for r in self._roots), default=0)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes


# --------------------------------------------------------------------
# Default onboarding graph
# --------------------------------------------------------------------

GREETING_MESSAGES = {
    "greeting": "Greetings! Upload a sports video and get instant AI analysis.",
    "show_examples": "I have a few demo analyses ready for you to explore. Pick one to see what SportAI can do:",
    "how_it_works": (
        "Upload a tennis, padel, or pickleball video and I'll break it down frame by frame.\n\n"
        "I use the SportAI AI Platform to track players and the ball, then provide specific feedback "
        "on what you're doing well and what to improve.\n\n"
        "Ready to try it? Don't be shy. Drop a video below, or check out the examples."
    ),
    "upload_video": (
        "Perfect! Drag and drop your video here or click the **+** button below.\n\n"
        "For best results, use a video where the player or the full court is clearly visible (see examples). "
        "I'll analyze technique, movement, and tactics automatically.\n\n"
        "I'm best with racket sports like Tennis, Padel and Pickleball, but able to analyze other sports as well."
    ),
}

DEMO_OPTION_IDS = ("demo-tennis-serve", "demo-padel-match", "demo-tennis-match")
UPLOAD_TEXT = "I have a video to upload"
EXAMPLES_TEXT = "Show me some examples"
HOW_IT_WORKS_TEXT = "How does it work?"


def _upload(node_id: str, children: Tuple[str, ...] = ()) -> OptionNode:
    return OptionNode(node_id, UPLOAD_TEXT, GREETING_MESSAGES["upload_video"], children)


def _examples(node_id: str) -> OptionNode:
    return OptionNode(node_id, EXAMPLES_TEXT, GREETING_MESSAGES["show_examples"], DEMO_OPTION_IDS)


def _how_it_works(node_id: str, children: Tuple[str, ...] = ()) -> OptionNode:
    return OptionNode(node_id, HOW_IT_WORKS_TEXT, GREETING_MESSAGES["how_it_works"], children)


def default_option_graph(max_depth: int = GREETING_MAX_DEPTH) -> OptionGraph:
    nodes = [
        OptionNode(
            "demo-tennis-serve",
            "Tennis serve technique analysis",
            "Analyzing the tennis serve demo...",
            demo_video_url="https://res.cloudinary.com/djtxhrly7/video/upload/v1763677270/Serve.mp4",
        ),
        OptionNode(
            "demo-padel-match",
            "Padel match (10 min, back camera)",
            "Analyzing the padel match demo...\n\nThis 10-minute doubles match will show tactical analysis "
            "including court positioning, shot selection, and movement patterns.",
            demo_video_key="test/1765293768560_nthug5r97_3g2AQVBSF1M_003.mp4",
        ),
        # No video yet; behaves like a plain option with a canned reply
        OptionNode(
            "demo-tennis-match",
            "Tennis match (10 min, back camera)",
            "Great choice! Loading the Tennis match analysis...\n\nThis demo shows full match analysis "
            "including rally patterns, court coverage, and strategic insights.",
        ),
        # Terminal follow-ups
        _upload("upload-video-terminal"),
        _examples("show-examples-terminal"),
        # After "How does it work?"
        _examples("show-examples-followup-3"),
        _upload("upload-video-followup", ("show-examples-followup-3",)),
        _examples("show-examples-followup-2"),
        # After "I have a video to upload"
        _examples("show-examples-followup"),
        _how_it_works("how-it-works-followup", ("upload-video-terminal", "show-examples-terminal")),
        # Greeting
        _upload("upload-video", ("show-examples-followup", "how-it-works-followup")),
        _examples("show-examples"),
        _how_it_works("how-it-works", ("upload-video-followup", "show-examples-followup-2")),
    ]
    return OptionGraph(nodes, roots=("upload-video", "show-examples", "how-it-works"), max_depth=max_depth)
