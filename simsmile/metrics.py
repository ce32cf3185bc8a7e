"""Smile measurements, facial analysis, recommendations and narrative.

Everything here is a pure function: the same landmarks (or the fallback
record) always yield the same analysis text, byte for byte.
"""
import math
from typing import List, Optional, Sequence, Tuple

from .config import (
    AVERAGE_IPD_MM,
    BUCCAL_NARROW,
    BUCCAL_WIDE,
    GINGIVAL_HIGH_MM,
    GINGIVAL_LOW_MM,
    LIP_ELEVATION_BASELINE_MM,
    MIDLINE_COINCIDENCE_MM,
    MIDLINE_TOLERANCE_MM,
    SMILE_ARC_CONSONANT,
    SMILE_ARC_FLAT,
    THIRDS_TOLERANCE,
)
from .face_analyzer import LANDMARK_INDEX
from .schemas import (
    FaceAnalysis,
    FacialProportions,
    GingivalDisplay,
    Landmark,
    MetricsRecord,
    MidlineCoincidence,
    MidlineDeviation,
    Recommendation,
    Recommendations,
)

EPSILON = 1e-6
MIN_LANDMARKS = max(LANDMARK_INDEX.values()) + 1

# Used whenever landmarks are missing; same shape as a measured record.
FALLBACK_METRICS = MetricsRecord(
    smileArc="consonante",
    gingival=GingivalDisplay(mm=1.0, class_="media"),
    midline=MidlineDeviation(mm=0.0, side="centrado"),
    buccalRatio=0.8,
    facialMidline=MidlineDeviation(mm=0.0, side="centrado"),
    midlineCoincidence=MidlineCoincidence(deviation=0.0, status="coincidente"),
    facialProportions=FacialProportions(
        upperThird=0.33,
        middleThird=0.34,
        lowerThird=0.33,
        isBalanced=True,
    ),
)

PRIORITY_RANK = {"baja": 0, "media": 1, "alta": 2}
THIRD_LABELS = ("superior", "medio", "inferior")


# --- Geometry helpers ---

def _point(landmarks: Sequence[Landmark], name: str, width: int, height: int) -> Tuple[float, float]:
    lm = landmarks[LANDMARK_INDEX[name]]
    return lm.x * width, lm.y * height


def _midpoint(a: Tuple[float, float], b: Tuple[float, float]) -> Tuple[float, float]:
    return (a[0] + b[0]) / 2, (a[1] + b[1]) / 2


def _mm_per_px(landmarks: Sequence[Landmark], width: int, height: int) -> float:
    """Pixel to millimeter scale from the interpupillary distance."""
    right_eye = _midpoint(
        _point(landmarks, "right_eye_outer", width, height),
        _point(landmarks, "right_eye_inner", width, height),
    )
    left_eye = _midpoint(
        _point(landmarks, "left_eye_inner", width, height),
        _point(landmarks, "left_eye_outer", width, height),
    )
    ipd = math.dist(right_eye, left_eye)
    if ipd < EPSILON:
        return 0.0
    return AVERAGE_IPD_MM / ipd


def _deviation(offset_px: float, scale: float) -> MidlineDeviation:
    """Signed horizontal offset -> mm and side (subject's side)."""
    mm = round(abs(offset_px) * scale, 1)
    if mm < MIDLINE_TOLERANCE_MM:
        return MidlineDeviation(mm=mm, side="centrado")
    # Image right is the subject's left
    return MidlineDeviation(mm=mm, side="izquierda" if offset_px > 0 else "derecha")


def _lip_drop_mm(landmarks: Sequence[Landmark], width: int, height: int) -> float:
    """Vertical distance nasion -> upper lip inner edge, in mm."""
    nasion = _point(landmarks, "nasion", width, height)
    lip = _point(landmarks, "upper_lip_inner", width, height)
    return (lip[1] - nasion[1]) * _mm_per_px(landmarks, width, height)


def _classify_gingival(mm: float) -> str:
    if mm < GINGIVAL_LOW_MM:
        return "baja"
    if mm <= GINGIVAL_HIGH_MM:
        return "media"
    return "alta"


def _classify_smile_arc(curvature: float) -> str:
    if curvature >= SMILE_ARC_CONSONANT:
        return "consonante"
    if curvature >= SMILE_ARC_FLAT:
        return "plana"
    return "invertida"


def _facial_proportions(landmarks: Sequence[Landmark], width: int, height: int) -> FacialProportions:
    forehead = _point(landmarks, "forehead", width, height)[1]
    glabella = _point(landmarks, "glabella", width, height)[1]
    subnasale = _point(landmarks, "subnasale", width, height)[1]
    menton = _point(landmarks, "menton", width, height)[1]

    upper = abs(glabella - forehead)
    middle = abs(subnasale - glabella)
    lower = abs(menton - subnasale)
    total = upper + middle + lower
    if total < EPSILON:
        return FALLBACK_METRICS.facialProportions

    upper_third = round(upper / total, 2)
    lower_third = round(lower / total, 2)
    middle_third = round(1.0 - upper_third - lower_third, 2)
    is_balanced = all(
        abs(third - 1 / 3) <= THIRDS_TOLERANCE
        for third in (upper_third, middle_third, lower_third)
    )
    return FacialProportions(
        upperThird=upper_third,
        middleThird=middle_third,
        lowerThird=lower_third,
        isBalanced=is_balanced,
    )


# --- Metrics ---

def compute_metrics(
    rest_landmarks: Sequence[Landmark],
    smile_landmarks: Sequence[Landmark],
    width: int,
    height: int,
) -> MetricsRecord:
    """Measure smile and face from resting and smiling landmarks.

    Both sets are scaled with the smiling image size; the two photos are
    expected to come from the same camera.

    Raises:
        ValueError: If a landmark set does not cover the face mesh topology.
    """
    for landmarks in (rest_landmarks, smile_landmarks):
        if len(landmarks) < MIN_LANDMARKS:
            raise ValueError(
                f"Landmark set too short: {len(landmarks)} (need {MIN_LANDMARKS})"
            )

    scale = _mm_per_px(smile_landmarks, width, height)

    # Midlines
    nasion = _point(smile_landmarks, "nasion", width, height)
    subnasale = _point(smile_landmarks, "subnasale", width, height)
    menton = _point(smile_landmarks, "menton", width, height)
    facial_x = (nasion[0] + subnasale[0] + menton[0]) / 3
    dental_x = _point(smile_landmarks, "upper_lip_inner", width, height)[0]

    corner_right = _point(smile_landmarks, "mouth_corner_right", width, height)
    corner_left = _point(smile_landmarks, "mouth_corner_left", width, height)
    mouth_center_x = _midpoint(corner_right, corner_left)[0]

    coincidence_mm = round(abs(dental_x - mouth_center_x) * scale, 1)
    coincidence = MidlineCoincidence(
        deviation=coincidence_mm,
        status="coincidente" if coincidence_mm < MIDLINE_COINCIDENCE_MM else "desviada",
    )

    # Smile arc: how far the lower lip sags below the inner commissures
    inner_right = _point(smile_landmarks, "inner_corner_right", width, height)
    inner_left = _point(smile_landmarks, "inner_corner_left", width, height)
    lower_lip = _point(smile_landmarks, "lower_lip_inner", width, height)
    mouth_width = math.dist(corner_right, corner_left)
    if mouth_width < EPSILON:
        curvature = 0.0
        buccal_ratio = 0.0
    else:
        sag = lower_lip[1] - (inner_right[1] + inner_left[1]) / 2
        curvature = sag / mouth_width
        buccal_ratio = math.dist(inner_right, inner_left) / mouth_width

    # Gingival display: upper lip rise beyond what still covers the gum
    elevation = (
        _lip_drop_mm(rest_landmarks, width, height)
        - _lip_drop_mm(smile_landmarks, width, height)
    )
    gingival_mm = round(max(0.0, elevation - LIP_ELEVATION_BASELINE_MM), 1)

    return MetricsRecord(
        smileArc=_classify_smile_arc(curvature),
        gingival=GingivalDisplay(mm=gingival_mm, class_=_classify_gingival(gingival_mm)),
        midline=_deviation(dental_x - facial_x, scale),
        buccalRatio=round(min(max(buccal_ratio, 0.0), 1.0), 2),
        facialMidline=_deviation(menton[0] - nasion[0], scale),
        midlineCoincidence=coincidence,
        facialProportions=_facial_proportions(rest_landmarks, width, height),
    )


def metrics_from_landmarks(
    rest_landmarks: Optional[Sequence[Landmark]],
    smile_landmarks: Optional[Sequence[Landmark]],
    width: int,
    height: int,
) -> MetricsRecord:
    """Measured record, or FALLBACK_METRICS when landmarks are missing."""
    if not rest_landmarks or not smile_landmarks:
        return FALLBACK_METRICS
    if len(rest_landmarks) < MIN_LANDMARKS or len(smile_landmarks) < MIN_LANDMARKS:
        return FALLBACK_METRICS
    return compute_metrics(rest_landmarks, smile_landmarks, width, height)


# --- Analysis ---

def analyze_face_characteristics(metrics: MetricsRecord) -> FaceAnalysis:
    """Grade each measurement and collect strengths and concerns."""
    score = 100
    strengths: List[str] = []
    concerns: List[str] = []

    if metrics.smileArc == "consonante":
        arc_assessment = "ideal"
        strengths.append("Arco de sonrisa consonante con el labio inferior")
    elif metrics.smileArc == "plana":
        arc_assessment = "mejorable"
        score -= 10
        concerns.append("Arco de sonrisa plano")
    else:
        arc_assessment = "desfavorable"
        score -= 20
        concerns.append("Arco de sonrisa invertido")

    gingival = metrics.gingival
    if gingival.class_ == "media":
        strengths.append("Exposición gingival equilibrada")
    elif gingival.class_ == "alta":
        score -= 15
        concerns.append(f"Exposición gingival excesiva ({gingival.mm} mm)")
    else:
        score -= 5
        concerns.append("Exposición gingival reducida")

    midline = metrics.midline
    if midline.side == "centrado" and metrics.midlineCoincidence.status == "coincidente":
        midline_status = "centrada"
        strengths.append("Línea media dental centrada")
    else:
        midline_status = "desviada"
        score -= min(20, 5 + round(midline.mm * 5))
        if midline.side != "centrado":
            concerns.append(f"Línea media dental desviada {midline.mm} mm hacia la {midline.side}")
        else:
            concerns.append("Línea media dental no coincide con el centro de los labios")

    if metrics.facialMidline.side != "centrado":
        score -= 5
        concerns.append(
            f"Eje facial inclinado {metrics.facialMidline.mm} mm hacia la {metrics.facialMidline.side}"
        )

    if metrics.buccalRatio < BUCCAL_WIDE:
        buccal = "amplio"
        score -= 10
        concerns.append("Corredores bucales amplios")
    elif metrics.buccalRatio > BUCCAL_NARROW:
        buccal = "estrecho"
        score -= 5
        concerns.append("Corredores bucales ausentes")
    else:
        buccal = "ideal"
        strengths.append("Corredores bucales proporcionados")

    proportions = metrics.facialProportions
    if proportions.isBalanced:
        balance = "equilibrado"
        strengths.append("Tercios faciales equilibrados")
    else:
        thirds = (proportions.upperThird, proportions.middleThird, proportions.lowerThird)
        dominant = THIRD_LABELS[thirds.index(max(thirds))]
        balance = f"tercio {dominant} dominante"
        score -= 10
        concerns.append(f"Predominio del tercio {dominant}")

    return FaceAnalysis(
        harmonyScore=max(0, min(100, score)),
        smileArcAssessment=arc_assessment,
        gingivalProfile=gingival.class_,
        midlineStatus=midline_status,
        buccalCorridor=buccal,
        facialBalance=balance,
        strengths=strengths,
        concerns=concerns,
    )


def generate_smile_recommendations(analysis: FaceAnalysis, metrics: MetricsRecord) -> Recommendations:
    """Treatment suggestions for each concern, most urgent first."""
    items: List[Recommendation] = []
    treatments: List[str] = []

    def add(area, priority, title, detail, *suggested):
        items.append(Recommendation(area=area, priority=priority, title=title, detail=detail))
        for treatment in suggested:
            if treatment not in treatments:
                treatments.append(treatment)

    if analysis.smileArcAssessment != "ideal":
        add(
            "arco de sonrisa",
            "alta" if analysis.smileArcAssessment == "desfavorable" else "media",
            "Rediseño del borde incisal",
            "Alinear los bordes de los incisivos con la curva del labio inferior.",
            "Carillas de porcelana",
            "Contorneado estético",
        )

    if analysis.gingivalProfile == "alta":
        add(
            "encía",
            "alta",
            "Control de la exposición gingival",
            f"Se observan {metrics.gingival.mm} mm de encía al sonreír.",
            "Gingivectomía estética",
            "Toxina botulínica para labio hiperactivo",
        )
    elif analysis.gingivalProfile == "baja":
        add(
            "encía",
            "baja",
            "Evaluar la longitud de los incisivos",
            "El labio superior cubre por completo la encía y parte de los dientes.",
            "Alargamiento incisal con resinas",
        )

    if analysis.midlineStatus == "desviada":
        add(
            "línea media",
            "alta" if metrics.midline.mm > 2.0 else "media",
            "Corrección de la línea media",
            f"Desviación de {metrics.midline.mm} mm respecto al eje facial.",
            "Ortodoncia con alineadores",
        )

    if analysis.buccalCorridor == "amplio":
        add(
            "corredor bucal",
            "media",
            "Ampliación del corredor bucal",
            f"Los dientes ocupan el {round(metrics.buccalRatio * 100)}% del ancho de la sonrisa.",
            "Expansión de arcada",
            "Carillas en premolares",
        )
    elif analysis.buccalCorridor == "estrecho":
        add(
            "corredor bucal",
            "baja",
            "Armonización del ancho de la sonrisa",
            "La sonrisa no muestra corredor bucal lateral.",
            "Evaluación ortodóncica",
        )

    if analysis.facialBalance != "equilibrado":
        add(
            "proporciones faciales",
            "baja",
            "Evaluación de la dimensión vertical",
            f"Se aprecia {analysis.facialBalance}.",
            "Rehabilitación sobre implantes",
        )

    if not items:
        add(
            "mantenimiento",
            "baja",
            "Mantener la salud de su sonrisa",
            "Sus proporciones dentales y faciales están dentro de los rangos ideales.",
            "Blanqueamiento dental",
            "Limpieza profesional",
        )

    items.sort(key=lambda item: -PRIORITY_RANK[item.priority])
    overall = max((item.priority for item in items), key=PRIORITY_RANK.__getitem__)

    return Recommendations(items=items, treatments=treatments, overallPriority=overall)


def generate_analysis_text(
    analysis: FaceAnalysis,
    metrics: MetricsRecord,
    recommendations: Recommendations,
) -> str:
    """Markdown narrative shown on the results page."""
    proportions = metrics.facialProportions
    lines = [
        "## Análisis de su sonrisa",
        "",
        f"Puntuación de armonía: {analysis.harmonyScore}/100",
        "",
        "### Mediciones",
        f"- Arco de sonrisa: {metrics.smileArc}",
        f"- Exposición gingival: {metrics.gingival.mm:.1f} mm ({metrics.gingival.class_})",
        f"- Línea media dental: {metrics.midline.mm:.1f} mm ({metrics.midline.side})",
        f"- Coincidencia de líneas medias: {metrics.midlineCoincidence.status}",
        f"- Corredor bucal: {metrics.buccalRatio:.2f} ({analysis.buccalCorridor})",
        (
            f"- Proporciones faciales: {proportions.upperThird:.2f} / "
            f"{proportions.middleThird:.2f} / {proportions.lowerThird:.2f} "
            f"({analysis.facialBalance})"
        ),
        "",
        "### Fortalezas",
    ]
    lines.extend(f"- {item}" for item in analysis.strengths or ["Sin fortalezas destacadas"])
    lines.extend(["", "### Aspectos a mejorar"])
    lines.extend(f"- {item}" for item in analysis.concerns or ["Ninguno relevante"])
    lines.extend(["", "### Recomendaciones"])
    lines.extend(
        f"{i}. **{item.title}** (prioridad {item.priority}): {item.detail}"
        for i, item in enumerate(recommendations.items, start=1)
    )
    lines.extend(["", "### Tratamientos sugeridos"])
    lines.extend(f"- {treatment}" for treatment in recommendations.treatments)
    lines.extend([
        "",
        "Este análisis es orientativo y no reemplaza la evaluación de un especialista.",
    ])
    return "\n".join(lines)
