"""
Geometry utilities

Matrix, bounding-box, quantization, normal compression and edge helpers
used while finalizing an XKT model.

Conventions:
    - AABBs are arrays of six floats: (xmin, ymin, zmin, xmax, ymax, zmax)
    - Matrices are 4x4 numpy arrays acting on column vectors; they are
      flattened column-major when read from or written to XKT/glTF
"""

import math
from typing import Optional, Sequence

import numpy as np

# Largest value of a quantized position component
QUANTIZED_MAX = 65535

# Decimal places kept when welding coincident vertices
WELD_DECIMALS = 5


def identity_mat4() -> np.ndarray:
    return np.eye(4, dtype=np.float64)


def mat4_from_column_major(values: Sequence[float]) -> np.ndarray:
    """Build a 4x4 matrix from 16 column-major values (glTF/XKT order)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size != 16:
        raise ValueError(f"Expected 16 matrix values, got {arr.size}")
    return arr.reshape((4, 4), order="F")


def mat4_to_column_major(matrix: np.ndarray) -> np.ndarray:
    return np.asarray(matrix, dtype=np.float64).flatten(order="F")


def translation_mat4(offset: Sequence[float]) -> np.ndarray:
    m = identity_mat4()
    m[:3, 3] = offset[:3]
    return m


def scale_mat4(scale: Sequence[float]) -> np.ndarray:
    m = identity_mat4()
    m[0, 0], m[1, 1], m[2, 2] = scale[0], scale[1], scale[2]
    return m


def quaternion_to_mat4(quaternion: Sequence[float]) -> np.ndarray:
    """
    Convert a unit quaternion (x, y, z, w) into a rotation matrix.
    """
    x, y, z, w = (float(v) for v in quaternion)
    m = identity_mat4()
    m[0, 0] = 1 - 2 * (y * y + z * z)
    m[0, 1] = 2 * (x * y - z * w)
    m[0, 2] = 2 * (x * z + y * w)
    m[1, 0] = 2 * (x * y + z * w)
    m[1, 1] = 1 - 2 * (x * x + z * z)
    m[1, 2] = 2 * (y * z - x * w)
    m[2, 0] = 2 * (x * z - y * w)
    m[2, 1] = 2 * (y * z + x * w)
    m[2, 2] = 1 - 2 * (x * x + y * y)
    return m


def euler_to_mat4(rotation: Sequence[float]) -> np.ndarray:
    """
    Rotation matrix from Euler angles in degrees, applied in XYZ order.
    """
    rx, ry, rz = (math.radians(float(a)) for a in rotation[:3])
    cx, sx = math.cos(rx), math.sin(rx)
    cy, sy = math.cos(ry), math.sin(ry)
    cz, sz = math.cos(rz), math.sin(rz)

    rot_x = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    rot_y = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rot_z = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])

    m = identity_mat4()
    m[:3, :3] = rot_x @ rot_y @ rot_z
    return m


def compose_mat4(
    position: Optional[Sequence[float]] = None,
    scale: Optional[Sequence[float]] = None,
    rotation: Optional[Sequence[float]] = None,
    quaternion: Optional[Sequence[float]] = None
) -> np.ndarray:
    """
    Compose translation * rotation * scale into a single matrix.

    Args:
        position: Translation (x, y, z)
        scale: Scale factors (x, y, z)
        rotation: Euler angles in degrees, XYZ order (ignored if quaternion given)
        quaternion: Rotation quaternion (x, y, z, w)

    Returns:
        4x4 transform matrix
    """
    m = identity_mat4()
    if position is not None:
        m = m @ translation_mat4(position)
    if quaternion is not None:
        m = m @ quaternion_to_mat4(quaternion)
    elif rotation is not None:
        m = m @ euler_to_mat4(rotation)
    if scale is not None:
        m = m @ scale_mat4(scale)
    return m


def transform_positions(positions: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to an (N, 3) array of points."""
    return positions @ matrix[:3, :3].T + matrix[:3, 3]


def transform_normals(normals: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Transform (N, 3) normals by the inverse-transpose of the matrix and renormalize."""
    try:
        normal_matrix = np.linalg.inv(matrix[:3, :3]).T
    except np.linalg.LinAlgError:
        normal_matrix = matrix[:3, :3]
    transformed = normals @ normal_matrix.T
    return normalize_rows(transformed)


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    lengths = np.linalg.norm(vectors, axis=1, keepdims=True)
    lengths[lengths == 0] = 1.0
    return vectors / lengths


def collapse_aabb() -> np.ndarray:
    """An empty AABB that any expansion will overwrite."""
    return np.array([np.inf, np.inf, np.inf, -np.inf, -np.inf, -np.inf], dtype=np.float64)


def positions_aabb(positions: np.ndarray) -> np.ndarray:
    if len(positions) == 0:
        return np.zeros(6, dtype=np.float64)
    return np.concatenate([positions.min(axis=0), positions.max(axis=0)]).astype(np.float64)


def expand_aabb(aabb: np.ndarray, other: np.ndarray) -> np.ndarray:
    aabb[:3] = np.minimum(aabb[:3], other[:3])
    aabb[3:] = np.maximum(aabb[3:], other[3:])
    return aabb


def aabb_contains(outer: np.ndarray, inner: np.ndarray) -> bool:
    return bool(np.all(outer[:3] <= inner[:3]) and np.all(inner[3:] <= outer[3:]))


def aabb_center(aabb: np.ndarray) -> np.ndarray:
    return (aabb[:3] + aabb[3:]) / 2.0


def quantize_positions(positions: np.ndarray, aabb: np.ndarray) -> np.ndarray:
    """
    Quantize (N, 3) float positions into uint16 values spanning the AABB.

    Axes with zero extent quantize to 0.
    """
    mins = aabb[:3]
    extents = aabb[3:] - mins
    multipliers = np.zeros(3, dtype=np.float64)
    nonzero = extents > 0
    multipliers[nonzero] = QUANTIZED_MAX / extents[nonzero]
    quantized = np.floor((positions - mins) * multipliers)
    return np.clip(quantized, 0, QUANTIZED_MAX).astype(np.uint16)


def create_positions_decode_matrix(aabb: np.ndarray) -> np.ndarray:
    """
    Matrix that maps quantized positions back into the AABB's coordinate space.
    """
    mins = aabb[:3]
    extents = aabb[3:] - mins
    return translation_mat4(mins) @ scale_mat4(extents / QUANTIZED_MAX)


def _oct_candidates(x: np.ndarray, y: np.ndarray, xfunc, yfunc) -> np.ndarray:
    xs = xfunc(x * 127.5 + np.where(x < 0, -1, 0))
    ys = yfunc(y * 127.5 + np.where(y < 0, -1, 0))
    return np.column_stack([np.clip(xs, -128, 127), np.clip(ys, -128, 127)]).astype(np.int8)


def oct_decode_normals(encoded: np.ndarray) -> np.ndarray:
    """Decode (N, 2) int8 oct-encoded normals into unit (N, 3) vectors."""
    enc = encoded.astype(np.float64)
    x = enc[:, 0] / np.where(enc[:, 0] < 0, 127.0, 128.0)
    y = enc[:, 1] / np.where(enc[:, 1] < 0, 127.0, 128.0)
    z = 1.0 - np.abs(x) - np.abs(y)
    folded = z < 0
    fx = (1.0 - np.abs(y)) * np.where(x >= 0, 1.0, -1.0)
    fy = (1.0 - np.abs(x)) * np.where(y >= 0, 1.0, -1.0)
    x = np.where(folded, fx, x)
    y = np.where(folded, fy, y)
    return normalize_rows(np.column_stack([x, y, z]))


def oct_encode_normals(normals: np.ndarray) -> np.ndarray:
    """
    Oct-encode (N, 3) unit normals into (N, 2) int8 pairs.

    Each normal tries the four floor/ceil roundings and keeps the one
    whose decoded direction is closest to the input.
    """
    normals = normalize_rows(np.asarray(normals, dtype=np.float64).reshape(-1, 3))
    if len(normals) == 0:
        return np.zeros((0, 2), dtype=np.int8)

    l1 = np.abs(normals).sum(axis=1)
    l1[l1 == 0] = 1.0
    x = normals[:, 0] / l1
    y = normals[:, 1] / l1
    negative_z = normals[:, 2] < 0
    fx = (1.0 - np.abs(y)) * np.where(x >= 0, 1.0, -1.0)
    fy = (1.0 - np.abs(x)) * np.where(y >= 0, 1.0, -1.0)
    x = np.where(negative_z, fx, x)
    y = np.where(negative_z, fy, y)

    best = None
    best_dot = None
    for xfunc in (np.floor, np.ceil):
        for yfunc in (np.floor, np.ceil):
            candidate = _oct_candidates(x, y, xfunc, yfunc)
            dot = np.einsum("ij,ij->i", oct_decode_normals(candidate), normals)
            if best is None:
                best, best_dot = candidate, dot
            else:
                better = dot > best_dot
                best[better] = candidate[better]
                best_dot = np.where(better, dot, best_dot)
    return best


def face_normals(positions: np.ndarray, indices: np.ndarray) -> np.ndarray:
    """Unit normals for each triangle in an (M, 3) index array."""
    tris = positions[indices]
    normals = np.cross(tris[:, 1] - tris[:, 0], tris[:, 2] - tris[:, 0])
    return normalize_rows(normals)


def weld_vertices(positions: np.ndarray):
    """
    Merge coincident vertices.

    Returns:
        first_index: for each welded vertex, the index of one original vertex
        inverse: for each original vertex, its welded vertex index
    """
    keys = np.round(positions, WELD_DECIMALS)
    _, first_index, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    return first_index, np.asarray(inverse).reshape(-1)


def build_edge_indices(
    positions: np.ndarray,
    indices: np.ndarray,
    edge_threshold: float = 10.0
) -> np.ndarray:
    """
    Find the feature edges of a triangle mesh.

    An edge is kept when it borders a single triangle, more than two
    triangles, or two triangles whose normals differ by more than
    ``edge_threshold`` degrees.

    Args:
        positions: (N, 3) vertex positions
        indices: Flat or (M, 3) triangle indices
        edge_threshold: Crease angle in degrees

    Returns:
        Flat uint32 array of vertex index pairs
    """
    tris = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
    if len(tris) == 0 or len(positions) == 0:
        return np.zeros(0, dtype=np.uint32)

    first_index, inverse = weld_vertices(positions)
    welded = inverse[tris]
    normals = face_normals(positions, tris)

    edges = np.concatenate([welded[:, [0, 1]], welded[:, [1, 2]], welded[:, [2, 0]]])
    faces = np.tile(np.arange(len(tris)), 3)
    valid = edges[:, 0] != edges[:, 1]
    edges = np.sort(edges[valid], axis=1)
    faces = faces[valid]
    if len(edges) == 0:
        return np.zeros(0, dtype=np.uint32)

    unique_edges, edge_ids, counts = np.unique(edges, axis=0, return_inverse=True, return_counts=True)
    edge_ids = np.asarray(edge_ids).reshape(-1)

    keep = counts != 2
    paired = np.flatnonzero(counts == 2)
    if len(paired):
        order = np.argsort(edge_ids, kind="stable")
        sorted_ids = edge_ids[order]
        starts = np.searchsorted(sorted_ids, paired)
        face_a = faces[order[starts]]
        face_b = faces[order[starts + 1]]
        dots = np.einsum("ij,ij->i", normals[face_a], normals[face_b])
        threshold = math.cos(math.radians(edge_threshold))
        keep[paired] = dots < threshold

    kept = unique_edges[keep]
    return first_index[kept].astype(np.uint32).reshape(-1)


def is_triangle_mesh_solid(positions: np.ndarray, indices: np.ndarray) -> bool:
    """
    True when the mesh is closed and consistently wound: every directed edge
    appears exactly once and its reverse appears exactly once.
    """
    tris = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
    if len(tris) < 4:
        return False
    _, inverse = weld_vertices(positions)
    welded = inverse[tris]
    starts = welded.reshape(-1)
    ends = welded[:, [1, 2, 0]].reshape(-1)
    n = int(welded.max()) + 1
    forward = starts * n + ends
    reverse = ends * n + starts
    if np.unique(forward).size != forward.size:
        return False
    return bool(np.all(np.isin(reverse, forward)))


def smooth_normals(
    positions: np.ndarray,
    indices: np.ndarray,
    angle_threshold: float = 20.0
) -> np.ndarray:
    """
    Per-vertex normals averaged over the faces that share a welded vertex,
    skipping faces whose normal deviates by more than ``angle_threshold``
    degrees from the vertex's own face.

    Expects unwelded triangles (one vertex per triangle corner), which is how
    STL geometry arrives.
    """
    tris = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
    normals = face_normals(positions, tris)
    vertex_face = np.empty(len(positions), dtype=np.int64)
    vertex_face[tris.reshape(-1)] = np.repeat(np.arange(len(tris)), 3)

    _, inverse = weld_vertices(positions)
    threshold = math.cos(math.radians(angle_threshold))
    result = np.zeros_like(positions, dtype=np.float64)

    order = np.argsort(inverse, kind="stable")
    boundaries = np.flatnonzero(np.diff(inverse[order])) + 1
    for group in np.split(order, boundaries):
        group_normals = normals[vertex_face[group]]
        similarity = group_normals @ group_normals.T
        weights = (similarity >= threshold).astype(np.float64)
        result[group] = weights @ group_normals

    return normalize_rows(result)
